"""
Warm-up runner with the site crawlers replaced by in-memory fakes.
"""

import asyncio

import pytest

from campusbot.errors import AllMirrorsFailed
from campusbot.handlers import SemesterDetector
from campusbot.models import Contact, Course, Program, Student
from campusbot.sites import contacts, courses, programs, students
from campusbot.smart import SmartIndex
from campusbot.store import CONTACT, STUDENT
from campusbot.warmup import Readiness, Warmup, parse_modules

from conftest import FakeClock, fixed_now


@pytest.fixture
def warmup(store, scraper, metrics):
    return Warmup(store, scraper, metrics, now=fixed_now)


def test_parse_modules():
    assert parse_modules("id, Contact,,course,weather,id") == ["id", "contact", "course"]
    assert parse_modules("") == []


def test_readiness_after_warmup_or_timeout():
    clock = FakeClock()
    readiness = Readiness(10, clock)
    assert not readiness.ready
    clock.advance(10)
    assert readiness.ready
    assert not readiness.warmup_done

    readiness = Readiness(10, clock)
    readiness.mark_ready()
    assert readiness.ready and readiness.warmup_done


@pytest.mark.asyncio
async def test_run_collects_counts_and_errors(warmup, metrics, monkeypatch):
    async def fake_directory(client, kind):
        if kind == contacts.KIND_ADMINISTRATIVE:
            raise AllMirrorsFailed("sea")
        return [Contact(uid="org_資工", type="organization", name="資訊工程學系")]

    async def fake_programs(client):
        return [Program(name="金融科技學分學程"), Program(name="人工智慧微學程")]

    async def fake_semester(client, year, term=0):
        raise AllMirrorsFailed("sea")

    monkeypatch.setattr(contacts, "fetch_directory", fake_directory)
    monkeypatch.setattr(programs, "fetch_programs", fake_programs)
    monkeypatch.setattr(courses, "fetch_semester", fake_semester)

    report = await warmup.run(["contact", "program", "course"])
    assert report.counts == {"contact": 1, "program": 2}
    assert len(report.errors) == 1 and report.errors[0].startswith("course:")
    assert not report.ok
    assert metrics.registry.get_sample_value("campusbot_warmup_records_total", {"module": "program"}) == 2.0


@pytest.mark.asyncio
async def test_id_warmup_walks_years_and_departments(warmup, monkeypatch):
    calls = []

    async def fake_students(client, year, code):
        calls.append((year, code))
        if code == "85":
            return [Student(id=f"4{year}85001", name="王小明", year=year, department="資工系")]
        return []

    monkeypatch.setattr(students, "fetch_students", fake_students)
    assert await warmup.warm_id() == 12
    assert calls[0] == (112, "71")
    assert calls[-1] == (101, "87")


@pytest.mark.asyncio
async def test_id_warmup_fails_when_every_list_fails(warmup, monkeypatch):
    async def broken(client, year, code):
        raise AllMirrorsFailed("lms")

    monkeypatch.setattr(students, "fetch_students", broken)
    report = await warmup.run(["id"])
    assert report.counts == {}
    assert report.errors[0].startswith("id:")


@pytest.mark.asyncio
async def test_course_warmup_refreshes_semesters_and_index(store, scraper, monkeypatch):
    def course(uid, title):
        return Course(uid=uid, year=int(uid[:3]), term=int(uid[3]), no=uid[4:], title=title)

    years = []

    async def fake_semester(client, year, term=0):
        years.append(year)
        if year == 113:
            return [
                course("1132U0001", "Python 程式設計"),
                course("1132U0003", "民法總則"),
                course("1132U0004", "微積分"),
                course("1131U0002", "資料結構"),
            ]
        return []

    monkeypatch.setattr(courses, "fetch_semester", fake_semester)
    detector = SemesterDetector(store, None, now=fixed_now)
    smart = SmartIndex()
    warmup = Warmup(store, scraper, detector=detector, smart=smart, now=fixed_now)

    assert await warmup.warm_course() == 4
    assert years == [114, 113]
    assert await detector.recent(2) == [(113, 2), (113, 1)]
    assert smart.enabled
    assert smart.count() == 4
    assert smart.search("python")[0].course.uid == "1132U0001"


@pytest.mark.asyncio
async def test_reset_purges_before_warming(warmup, store):
    await store.save(STUDENT, Student(id="410585012", name="王小明", year=105, department="資工系"))
    await store.save(CONTACT, Contact(uid="org_a", type="organization", name="圖書館"))
    report = await warmup.run([], reset=True)
    assert report.ok
    assert await store.count(STUDENT) == 0
    assert await store.count(CONTACT) == 0


@pytest.mark.asyncio
async def test_run_is_bounded_by_timeout(warmup, monkeypatch):
    async def slow(client):
        await asyncio.sleep(5)
        return []

    monkeypatch.setattr(programs, "fetch_programs", slow)
    report = await warmup.run(["program"], timeout=0.05)
    assert report.errors == ["warm-up exceeded 0s"]


@pytest.mark.asyncio
async def test_background_run_marks_readiness(warmup):
    readiness = Readiness(3600)
    task = warmup.run_in_background([], readiness=readiness)
    report = await task
    assert report.ok
    assert readiness.warmup_done
