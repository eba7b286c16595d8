"""
HTML parsing of the upstream pages, on trimmed copies of their markup.
"""

import httpx
import pytest
from bs4 import BeautifulSoup

from campusbot.errors import AllMirrorsFailed
from campusbot.models import CONTACT_ORGANIZATION, CONTACT_PERSON
from campusbot.sites import contacts, courses, departments, programs, students

from conftest import make_scraper

STUDENT_PAGE = """
<div class="bloglistTitle"><a href="/portfolio/410585012">王小明</a></div>
<div class="bloglistTitle"><a href="/portfolio/410574201/">林小美</a></div>
<div class="bloglistTitle"><a href="">沒有學號</a></div>
<div class="bloglistTitle"><a href="/portfolio/admin">管理員</a></div>
<div class="bloglistTitle"><a href="/portfolio/4105850121">太長的學號</a></div>
<span class="item">1</span><span class="item">2</span><span class="item">3</span>
"""

CONTACT_PAGE = """
<div class="alert alert-info mt-0 mb-0">
  <a class="lang lang-zh-Hant mx-2" href="#">電機資訊學院</a>
  <a class="lang lang-zh-Hant mx-2" href="#">資訊工程學系</a>
  <ul>
    <li>電話</li><li>傳真</li><li>地點：電資大樓 5F</li>
    <li><a href="https://www.csie.ntpu.edu.tw">https://www.csie.ntpu.edu.tw</a></li>
  </ul>
</div>
<table class="w100"><tbody>
  <tr>
    <td><span class="lang-zh-Hant">陳小華</span><span class="lang-en">Hua Chen</span></td>
    <td>系主任</td>
    <td><span>67890</span></td>
    <td></td>
    <td><span>chen<img src="at.gif">gm.ntpu.edu.tw</span></td>
  </tr>
  <tr><td>too short</td></tr>
</tbody></table>
"""

COURSE_ROW = """
<table><tbody>
<tr>
  <td>1</td><td>x</td><td>2</td><td>U0001</td><td>x</td>
  <td>資工系<br>金融科技學程有擋修</td>
  <td>必<br>選修</td>
  <td><a href="course_query.queryguide?g_serial=U0001&amp;g_year=113">程式設計</a>
      <font>備註：教室:電4F01 需自備筆電</font></td>
  <td><a href="tec?teacher=1">王小明</a><a href="tec?teacher=2">李大華</a></td>
  <td>x</td><td>x</td><td>x</td><td>x</td>
  <td><a>每週一2~4\t電4F01</a><a>每週未維護</a></td>
</tr>
<tr><td>short row</td></tr>
</tbody></table>
"""

PROGRAM_PAGE = """
<a href="/board.php?courseID=28286&amp;f=doc&amp;cid=1">金融科技學程（112學年度起適用）</a>
<a href="/board.php?courseID=28286&amp;f=doc&amp;cid=2">舊版學程（廢止）</a>
<a href="/board.php?courseID=28286&amp;f=doc&amp;cid=1">金融科技學程 重複</a>
<a href="/board.php?courseID=28286&amp;f=doc&amp;cid=3">公告事項</a>
<a href="/board.php?courseID=28286&amp;f=doclist&amp;page=2">Next</a>
"""


def soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def test_parse_students_reads_ids_from_links():
    found = students.parse_students(soup(STUDENT_PAGE))
    assert [(s.id, s.name) for s in found] == [("410585012", "王小明"), ("410574201", "林小美")]
    assert found[0].year == 105
    assert found[0].department == "資工系"
    # sociology and social work share "74" and use one more digit
    assert found[1].department == "社學系"
    assert students.page_count(soup(STUDENT_PAGE)) == 3


def test_department_decoding():
    assert departments.is_student_id("41185012")
    assert not departments.is_student_id("4118501")
    assert departments.extract_year("49985012") == 99
    assert departments.determine_department("710533012") == "統計學系碩士班"
    assert departments.determine_department("123") == departments.UNKNOWN
    assert departments.lookup_code("資工系") == "85"
    assert departments.lookup_code("資訊工程學系") == "85"
    assert departments.lookup_code("不存在") == ""


def test_parse_contacts_organization_then_members():
    found = contacts.parse_contacts(soup(CONTACT_PAGE))
    assert [c.type for c in found] == [CONTACT_ORGANIZATION, CONTACT_PERSON]

    org, person = found
    assert org.name == "資訊工程學系"
    assert org.superior == "電機資訊學院"
    assert org.location == "電資大樓 5F"
    assert org.website == "https://www.csie.ntpu.edu.tw"

    assert person.name == "陳小華"
    assert person.name_en == "Hua Chen"
    assert person.title == "系主任"
    assert person.organization == "資訊工程學系"
    assert person.phone == "0286741111,67890"
    assert person.email == "chen@gm.ntpu.edu.tw"
    assert person.uid == "person_陳小華_資訊工程學系"


def test_full_phone_needs_five_digits():
    assert contacts.full_phone("1234") == ""
    assert contacts.full_phone("123456") == "0286741111,12345"


def test_parse_courses_row():
    found = courses.parse_courses(soup(COURSE_ROW), 113, 0)
    assert len(found) == 1
    course = found[0]
    assert course.uid == "1132U0001"
    assert course.term == 2
    assert course.title == "程式設計"
    assert course.teachers == ["王小明", "李大華"]
    assert len(course.teacher_urls) == 2
    assert course.times == ["每週一2~4"]
    assert "電4F01" in course.locations
    assert course.note.startswith("教室:電4F01")
    assert course.detail_url.endswith("g_serial=U0001&g_year=113&show_info=all")
    assert [(p.name, p.course_type) for p in course.programs] == [
        ("資工系", "必"), ("金融科技學程", "選"),
    ]


def test_parse_uid():
    assert courses.parse_uid("1131u0001") == (113, 1, "U0001")
    assert courses.parse_uid("991M1234") == (99, 1, "M1234")
    assert courses.parse_uid("1133U0001") is None
    assert courses.make_uid(113, 1, "u0001") == "1131U0001"


def test_clean_program_name():
    assert programs.clean_program_name("金融科技學程（112學年度起適用）") == "金融科技學分學程"
    assert programs.clean_program_name("人工智慧微學程") == "人工智慧微學程"
    assert programs.clean_program_name("鑑識學程") == "資本市場鑑識學分學程"


def test_parse_programs_skips_duplicates_and_abolished():
    seen = set()
    found, has_next = programs.parse_programs(soup(PROGRAM_PAGE), "學士學分學程", seen)
    assert has_next
    assert [p.name for p in found] == ["金融科技學分學程"]
    assert found[0].category == "學士學分學程"
    assert found[0].url.startswith("https://lms.ntpu.edu.tw/board.php")
    assert seen == {"1"}


@pytest.mark.asyncio
async def test_fetch_students_walks_every_page():
    pages = []

    def handler(request: httpx.Request) -> httpx.Response:
        pages.append(request.url.params["page"])
        assert request.url.params["fmKeyword"] == "411285"
        return httpx.Response(200, text=STUDENT_PAGE)

    client = make_scraper(handler)
    try:
        found = await students.fetch_students(client, 112, "85")
    finally:
        await client.close()
    assert pages == ["1", "2", "3"]
    assert len(found) == 6
    assert all(s.year == 112 for s in found)


@pytest.mark.asyncio
async def test_fetch_directory_skips_failed_units():
    index = '<div class="card-header"><a href="unit_a">A</a></div><div class="card-header"><a href="unit_b">B</a></div>'

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("CAMPUS_DIR_M.p1"):
            return httpx.Response(200, text=index)
        if request.url.path.endswith("unit_a"):
            return httpx.Response(200, text=CONTACT_PAGE)
        return httpx.Response(500)

    client = make_scraper(handler, endpoints={"sea": ["https://sea.test"]})
    try:
        found = await contacts.fetch_directory(client, contacts.KIND_ACADEMIC)
    finally:
        await client.close()
    assert len(found) == 2


@pytest.mark.asyncio
async def test_fetch_directory_fails_when_nothing_fetched():
    index = '<div class="card-header"><a href="unit_a">A</a></div>'

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("CAMPUS_DIR_M.p1"):
            return httpx.Response(200, text=index)
        return httpx.Response(502)

    client = make_scraper(handler, endpoints={"sea": ["https://sea.test"]})
    try:
        with pytest.raises(AllMirrorsFailed):
            await contacts.fetch_directory(client, contacts.KIND_ADMINISTRATIVE)
    finally:
        await client.close()
