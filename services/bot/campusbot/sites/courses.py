"""
Course query adapter for the SEA course system.

- queryByKeyword (GET): one education level (U/M/N/P) or one course number
  for a semester; qTerm omitted means both terms of the year.
- queryByAllConditions (POST, Big5 form): title (``cour``) or teacher
  (``teach``) search.

Result rows are ``table tbody tr`` with at least 14 cells.
"""

import html
import logging
import re
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup, Tag

from ..errors import ScraperError
from ..models import Course, ProgramRequirement
from ..scraper import ScraperClient

logger = logging.getLogger("sites.courses")

ENDPOINT = "sea"
KEYWORD_PATH = "/pls/dev_stud/course_query_all.queryByKeyword"
CONDITIONS_PATH = "/pls/dev_stud/course_query_all.queryByAllConditions"
PUBLIC_BASE = "https://sea.cc.ntpu.edu.tw"
DETAIL_PATH = "/pls/dev_stud/course_query.queryguide"
TEACHER_PATH = "/pls/faculty/tec_course_table.s_table"

# U = undergraduate, M = master, N = in-service master, P = PhD
EDUCATION_CODES = ("U", "M", "N", "P")

UID_PATTERN = re.compile(r"^(\d{2,3})([12])([UMNP]\d{4})$", re.IGNORECASE)

_CLASSROOM = re.compile(r"(?:教室|上課地點)[:：為](.*?)(?:$|[ .，。；【])")
_BR = re.compile(r"<br\s*/?>", re.IGNORECASE)
_TAGS = re.compile(r"<[^>]*>")
_NOTE_PREFIX = "備註："


def parse_uid(uid: str) -> Optional[Tuple[int, int, str]]:
    """"1131U0001" -> (113, 1, "U0001"); None when malformed."""
    m = UID_PATTERN.match(uid.strip())
    if not m:
        return None
    return int(m.group(1)), int(m.group(2)), m.group(3).upper()


def make_uid(year: int, term: int, no: str) -> str:
    return f"{year}{term}{no.upper()}"


# -----------------------------------------------------------------------------
# Row parsing
# -----------------------------------------------------------------------------
def _split_br(cell: Tag) -> List[str]:
    parts = []
    for chunk in _BR.split(cell.decode_contents()):
        text = html.unescape(_TAGS.sub("", chunk)).replace(" ", "").strip()
        if text:
            parts.append(text)
    return parts


def _course_type(value: str) -> str:
    if "必" in value:
        return "必"
    if "選" in value:
        return "選"
    return ""


def parse_requirements(major_cell: Tag, type_cell: Tag) -> List[ProgramRequirement]:
    """Pair the <br>-separated 應修系級 and 必選修別 columns."""
    out = []
    for name, kind in zip(_split_br(major_cell), _split_br(type_cell)):
        for token in ("有擋修", "有限制"):
            name = name.replace(token, "")
        name = name.strip()
        kind = _course_type(kind)
        if name and kind:
            out.append(ProgramRequirement(name=name, course_type=kind))
    return out


def _title_cell(cell: Tag) -> Tuple[str, str, str, str]:
    link = cell.find("a")
    title = link.get_text(strip=True) if link else ""
    detail_url = ""
    if link is not None and "?" in link.get("href", ""):
        query = link["href"].split("?", 1)[1]
        detail_url = f"{PUBLIC_BASE}{DETAIL_PATH}?{query}&show_info=all"

    note, location = "", ""
    font = cell.find("font")
    if font is not None:
        raw = font.get_text()
        if raw.startswith(_NOTE_PREFIX):
            note = raw[len(_NOTE_PREFIX):].strip()
            m = _CLASSROOM.search(note)
            if m:
                location = " ".join(m.group(1).split())
    return title, detail_url, note, location


def _teacher_cell(cell: Tag) -> Tuple[List[str], List[str]]:
    names, urls = [], []
    for a in cell.find_all("a"):
        names.append(a.get_text(strip=True))
        href = a.get("href", "")
        if "?" in href:
            urls.append(f"{PUBLIC_BASE}{TEACHER_PATH}?{href.split('?', 1)[1]}")
    # URLs are only kept when they line up with the names
    if len(urls) != len(names):
        urls = []
    return names, urls


def _schedule_cell(cell: Tag) -> Tuple[List[str], List[str]]:
    times, locations = [], []
    for a in cell.find_all("a"):
        line = a.get_text().strip()
        if "每週未維護" in line:
            continue
        parts = line.split("\t", 1)
        if parts[0].strip():
            times.append(parts[0].strip())
        if len(parts) > 1 and parts[1].strip():
            locations.append(parts[1].strip())
    return times, locations


def parse_courses(doc: BeautifulSoup, year: int, term: int = 0) -> List[Course]:
    """
    Courses on one result page. With ``term`` 0 the term is read from the
    row (column 2), defaulting to 1.
    """
    courses: List[Course] = []
    table = doc.find("table")
    if table is None:
        return courses
    for row in table.select("tbody tr"):
        cells = row.find_all("td")
        if len(cells) < 14:
            continue
        row_term = term
        if term == 0:
            raw = cells[2].get_text(strip=True)
            row_term = int(raw) if raw.isdigit() and int(raw) > 0 else 1
        no = cells[3].get_text(strip=True)
        title, detail_url, note, note_location = _title_cell(cells[7])
        if not title or not no:
            logger.debug("Skipping row without title/no (year=%s term=%s)", year, row_term)
            continue
        teachers, teacher_urls = _teacher_cell(cells[8])
        times, locations = _schedule_cell(cells[13])
        if note_location:
            locations.append(note_location)
        courses.append(Course(
            uid=make_uid(year, row_term, no),
            year=year,
            term=row_term,
            no=no.upper(),
            title=title,
            teachers=teachers,
            teacher_urls=teacher_urls,
            times=times,
            locations=locations,
            detail_url=detail_url,
            note=note,
            programs=parse_requirements(cells[5], cells[6]),
        ))
    return courses


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------
def _keyword_params(year: int, term: int, courseno: str) -> dict:
    params = {"qYear": str(year)}
    if term:
        params["qTerm"] = str(term)
    params.update({"seq1": "A", "seq2": "M", "courseno": courseno})
    return params


def _condition_form(year: int, term: int, field: str, value: str) -> dict:
    form = {"qYear": str(year)}
    if term:
        form["qTerm"] = str(term)
    form[field] = value
    form.update({"seq1": "A", "seq2": "M"})
    return form


async def fetch_semester(client: ScraperClient, year: int, term: int = 0) -> List[Course]:
    """
    Every course of a semester (term 0: the whole year), one request per
    education level. Fails only when every level failed.
    """
    courses: List[Course] = []
    last_error: Optional[ScraperError] = None
    for code in EDUCATION_CODES:
        try:
            doc = await client.get_document(ENDPOINT, KEYWORD_PATH, _keyword_params(year, term, code))
        except ScraperError as e:
            logger.warning("Course list %d-%d/%s failed: %s", year, term, code, e)
            last_error = e
            continue
        courses.extend(parse_courses(doc, year, term))
    if not courses and last_error is not None:
        raise last_error
    return courses


async def search_by_title(client: ScraperClient, year: int, term: int, title: str) -> List[Course]:
    doc = await client.post_form(ENDPOINT, CONDITIONS_PATH, _condition_form(year, term, "cour", title))
    return parse_courses(doc, year, term)


async def search_by_teacher(client: ScraperClient, year: int, term: int, teacher: str) -> List[Course]:
    doc = await client.post_form(ENDPOINT, CONDITIONS_PATH, _condition_form(year, term, "teach", teacher))
    return parse_courses(doc, year, term)


async def fetch_course(client: ScraperClient, uid: str) -> Optional[Course]:
    parsed = parse_uid(uid)
    if parsed is None:
        return None
    year, term, no = parsed
    doc = await client.get_document(ENDPOINT, KEYWORD_PATH, _keyword_params(year, term, no))
    courses = parse_courses(doc, year, term)
    for course in courses:
        if course.no == no:
            return course
    return courses[0] if courses else None


async def probe_courses_exist(client: ScraperClient, year: int, term: int) -> bool:
    """Cheap check (undergraduate list only) that a semester has been published."""
    doc = await client.get_document(ENDPOINT, KEYWORD_PATH, _keyword_params(year, term, "U"))
    return bool(parse_courses(doc, year, term))
