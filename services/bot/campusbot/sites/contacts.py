"""
Campus directory adapter (SEA, Big5 query strings).

- search: /pls/ld/CAMPUS_DIR_M.pq?q=<big5 term>
- directories: /pls/ld/CAMPUS_DIR_M.p1?kind=1 (administrative) and kind=2
  (academic); each ``div.card-header a`` links to one unit page.

A result page is a series of organization blocks, each optionally followed
by a ``.w100`` member table.
"""

import logging
from typing import List, Optional, Tuple
from urllib.parse import urlencode

from bs4 import BeautifulSoup, NavigableString, Tag

from ..errors import AllMirrorsFailed, ScraperError
from ..models import CONTACT_ORGANIZATION, CONTACT_PERSON, Contact
from ..scraper import BIG5, ScraperClient

logger = logging.getLogger("sites.contacts")

ENDPOINT = "sea"
SEARCH_PATH = "/pls/ld/CAMPUS_DIR_M.pq"
DIRECTORY_PATH = "/pls/ld/CAMPUS_DIR_M.p1"
UNIT_PREFIX = "/pls/ld/"
PUBLIC_BASE = "https://sea.cc.ntpu.edu.tw"

KIND_ADMINISTRATIVE = "1"
KIND_ACADEMIC = "2"

SANXIA_MAIN_PHONE = "0286741111"


def organization_uid(name: str) -> str:
    return f"org_{name}"


def person_uid(name: str, organization: str) -> str:
    return f"person_{name}_{organization}"


def full_phone(extension: str, main: str = SANXIA_MAIN_PHONE) -> str:
    """"0286741111,12345" for extensions of 5+ digits, otherwise ""."""
    if len(extension) < 5:
        return ""
    return f"{main},{extension[:5]}"


def search_url(term: str) -> str:
    """Public URL of the directory search page (for "open source page" buttons)."""
    return f"{PUBLIC_BASE}{SEARCH_PATH}?{urlencode({'q': term}, encoding=BIG5)}"


def _email(cell: Tag) -> str:
    span = cell.find("span")
    if span is None:
        return cell.get_text(strip=True)
    parts = []
    # The directory renders "@" as an image
    for node in span.children:
        if isinstance(node, NavigableString):
            parts.append(str(node))
        elif isinstance(node, Tag) and node.name == "img":
            parts.append("@")
        elif isinstance(node, Tag):
            parts.append(node.get_text())
    return "".join(parts).strip()


def _member(row: Tag, organization: str) -> Optional[Contact]:
    cells = row.find_all("td")
    if len(cells) < 5:
        return None
    name_cell = cells[0]
    zh = name_cell.select_one("span.lang-zh-Hant")
    name = zh.get_text(strip=True) if zh else ""
    if not name:
        first = name_cell.find("span")
        name = first.get_text(strip=True) if first else name_cell.get_text(strip=True)
    if not name:
        return None
    en = name_cell.select_one("span.lang-en")
    ext_span = cells[2].find("span")
    extension = (ext_span.get_text(strip=True) if ext_span else cells[2].get_text(strip=True))
    return Contact(
        uid=person_uid(name, organization),
        type=CONTACT_PERSON,
        name=name,
        name_en=en.get_text(strip=True) if en else "",
        title=cells[1].get_text(strip=True),
        organization=organization,
        extension=extension,
        phone=full_phone(extension),
        email=_email(cells[4]),
    )


def _organization(block: Tag) -> Tuple[str, str, str, str]:
    links = block.select("a.lang.lang-zh-Hant.mx-2")
    superior, name = "", ""
    if len(links) == 1:
        name = links[0].get_text(strip=True)
    elif len(links) > 1:
        superior = links[0].get_text(strip=True)
        name = links[1].get_text(strip=True)

    location, website = "", ""
    items = block.find_all("li")
    if len(items) > 2:
        text = items[2].get_text()
        if "：" in text:
            location = text.split("：", 1)[1].strip()
    if len(items) > 3:
        link = items[3].find("a")
        website = link.get_text(strip=True) if link else ""
    return name, superior, location, website


def parse_contacts(doc: BeautifulSoup) -> List[Contact]:
    """Organizations and their members, in page order."""
    contacts: List[Contact] = []
    for block in doc.select("div.alert.alert-info.mt-0.mb-0"):
        name, superior, location, website = _organization(block)
        if not name:
            continue
        contacts.append(Contact(
            uid=organization_uid(name),
            type=CONTACT_ORGANIZATION,
            name=name,
            superior=superior,
            location=location,
            website=website,
        ))
        table = block.find_next_sibling()
        if table is None or "w100" not in (table.get("class") or []):
            continue
        for row in table.select("tbody tr"):
            member = _member(row, name)
            if member is not None:
                contacts.append(member)
    return contacts


async def search_contacts(client: ScraperClient, term: str) -> List[Contact]:
    doc = await client.get_document(ENDPOINT, SEARCH_PATH, {"q": term}, encoding=BIG5)
    return parse_contacts(doc)


async def fetch_directory(client: ScraperClient, kind: str) -> List[Contact]:
    """
    Crawl every unit page of a directory. Unit failures are logged and
    skipped; the crawl fails only when nothing could be fetched.
    """
    index = await client.get_document(ENDPOINT, DIRECTORY_PATH, {"kind": kind})
    hrefs = []
    for header in index.select("div.card-header"):
        link = header.find("a")
        if link is not None and link.get("href"):
            hrefs.append(link["href"].strip())

    contacts: List[Contact] = []
    failures: List[str] = []
    last_error: Optional[ScraperError] = None
    for href in hrefs:
        try:
            doc = await client.get_document(ENDPOINT, UNIT_PREFIX + href.lstrip("/"))
        except ScraperError as e:
            logger.warning("Directory unit %s failed: %s", href, e)
            failures.append(href)
            last_error = e
            continue
        contacts.extend(parse_contacts(doc))

    if failures and not contacts:
        raise AllMirrorsFailed(ENDPOINT, last_error)
    return contacts
