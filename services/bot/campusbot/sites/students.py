"""
LMS portfolio search adapter.

Listing URL: /portfolio/search.php?fmScope=2&page=N&fmKeyword=4{year}{dept}
Each hit is a ``div.bloglistTitle a`` whose href ends with the student id;
the pager is a set of ``span.item`` page numbers.
"""

import logging
from typing import AsyncIterator, List, Optional

from bs4 import BeautifulSoup

from ..models import Student
from ..scraper import ScraperClient
from .departments import determine_department, extract_year, is_student_id

logger = logging.getLogger("sites.students")

ENDPOINT = "lms"
SEARCH_PATH = "/portfolio/search.php"


def _params(keyword: str, page: int = 1) -> dict:
    return {"fmScope": "2", "page": str(page), "fmKeyword": keyword}


def page_count(doc: BeautifulSoup) -> int:
    total = 1
    for span in doc.select("span.item"):
        text = span.get_text(strip=True)
        if text.isdigit():
            total = max(total, int(text))
    return total


def parse_students(doc: BeautifulSoup, year: Optional[int] = None) -> List[Student]:
    """
    Students listed on one result page. The year comes from the id unless
    the caller already knows it (listing by year).
    """
    students: List[Student] = []
    for block in doc.select("div.bloglistTitle"):
        link = block.find("a")
        if link is None or not link.get("href"):
            continue
        student_id = link["href"].rstrip("/").split("/")[-1].strip()
        name = link.get_text(strip=True)
        if not name or not is_student_id(student_id):
            logger.debug("Skipping student row %r", student_id)
            continue
        students.append(Student(
            id=student_id,
            name=name,
            year=year if year is not None else extract_year(student_id),
            department=determine_department(student_id),
        ))
    return students


async def iter_students(client: ScraperClient, year: int, department_code: str) -> AsyncIterator[Student]:
    """
    Yield every student admitted in ``year`` to ``department_code``, page by
    page, so callers can start persisting before the last page arrives.
    """
    keyword = f"4{year}{department_code}"
    doc = await client.get_document(ENDPOINT, SEARCH_PATH, _params(keyword))
    pages = page_count(doc)
    for student in parse_students(doc, year):
        yield student
    for page in range(2, pages + 1):
        doc = await client.get_document(ENDPOINT, SEARCH_PATH, _params(keyword, page))
        for student in parse_students(doc, year):
            yield student


async def fetch_students(client: ScraperClient, year: int, department_code: str) -> List[Student]:
    students = [s async for s in iter_students(client, year, department_code)]
    logger.debug("Scraped %d student(s) for year=%d dept=%s", len(students), year, department_code)
    return students


async def fetch_student(client: ScraperClient, student_id: str) -> Optional[Student]:
    """Single lookup by id; None when the portfolio search has no hit."""
    doc = await client.get_document(ENDPOINT, SEARCH_PATH, _params(student_id))
    found = parse_students(doc)
    if not found:
        return None
    first = found[0]
    # The search is a prefix match; keep the id that was asked for
    return Student(
        id=student_id,
        name=first.name,
        year=extract_year(student_id),
        department=determine_department(student_id),
    )
