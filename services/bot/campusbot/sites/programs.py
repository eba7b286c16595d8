"""
Program catalogue adapter: crawls the LMS board folders that list the
credit programs (學分學程) and micro programs (微學程).
"""

import logging
from typing import List, Set, Tuple
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup

from ..errors import ScraperError
from ..models import Program
from ..scraper import ScraperClient

logger = logging.getLogger("sites.programs")

ENDPOINT = "lms"
BOARD_PATH = "/board.php"
PUBLIC_BASE = "https://lms.ntpu.edu.tw"
COURSE_ID = "28286"
MAX_PAGES = 10

# (folder id, category)
FOLDERS: List[Tuple[str, str]] = [
    ("115531", "碩士學分學程"),
    ("115532", "學士學分學程"),
    ("115533", "學士暨碩士學分學程"),
    ("198807", "碩士跨域微學程"),
    ("198808", "學士跨域微學程"),
    ("198809", "學士暨碩士跨域微學程"),
    ("198811", "碩士單一領域微學程"),
    ("198812", "學士單一領域微學程"),
]

# Short names used by the course system -> official catalogue names
ALIASES = {
    "英語商學碩士學分學程": "英語授課商學碩士學分學程",
    "英語商學學士學分學程": "英語授課商學學士學分學程",
    "人工智慧英語學士學分學程": "人工智慧英語授課學士學分學程",
    "人工智慧英語學士微學程": "人工智慧英語授課學士微學程",
    "鑑識學分學程": "資本市場鑑識學分學程",
}


def clean_program_name(name: str) -> str:
    """
    Cut annotations after the first "學程", complete a bare "…學程" to
    "…學分學程", then apply the alias table.
    """
    idx = name.find("學程")
    if idx >= 0:
        name = name[: idx + len("學程")]
    name = name.strip()
    if name.endswith("學程") and not (name.endswith("學分學程") or name.endswith("微學程")):
        name = name[: -len("學程")] + "學分學程"
    return ALIASES.get(name, name)


def _params(folder_id: str, page: int) -> dict:
    params = {"courseID": COURSE_ID, "f": "doclist", "folderID": folder_id}
    if page > 1:
        params["page"] = str(page)
    return params


def parse_programs(doc: BeautifulSoup, category: str, seen: Set[str]) -> Tuple[List[Program], bool]:
    """Programs on one folder page plus whether a next page exists."""
    programs: List[Program] = []
    has_next = False
    for a in doc.find_all("a", href=True):
        text = a.get_text(strip=True)
        if text in ("Next", "下一頁"):
            has_next = True
            continue
        href = a["href"].strip()
        query = parse_qs(urlparse(href).query)
        if query.get("f", [""])[0] != "doc":
            continue
        cid = query.get("cid", [""])[0]
        if not cid or cid in seen:
            continue
        if not text or "學程" not in text or "廢止" in text:
            continue
        if not href.startswith("http"):
            href = PUBLIC_BASE + (href if href.startswith("/") else "/" + href)
        seen.add(cid)
        programs.append(Program(name=clean_program_name(text), category=category, url=href))
    return programs, has_next


async def fetch_programs(client: ScraperClient) -> List[Program]:
    """
    Crawl every folder (up to MAX_PAGES each). A failing first page skips the
    folder; a failing later page ends that folder.
    """
    seen: Set[str] = set()
    programs: List[Program] = []
    for folder_id, category in FOLDERS:
        for page in range(1, MAX_PAGES + 1):
            try:
                doc = await client.get_document(ENDPOINT, BOARD_PATH, _params(folder_id, page))
            except ScraperError as e:
                logger.warning("Program folder %s page %d failed: %s", folder_id, page, e)
                break
            found, has_next = parse_programs(doc, category, seen)
            programs.extend(found)
            if not has_next or not found:
                break
    logger.info("Discovered %d program(s)", len(programs))
    return programs
