"""
Semester resolution for course searches.

Taiwan's academic year starts in September: term 1 runs Sep-Jan, term 2
Feb-Jun, and Jul-Aug is summer break (term 2 is still the latest).
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from ..errors import ScraperError
from ..scraper import ScraperClient
from ..sites.courses import probe_courses_exist
from ..store import Store
from .base import roc_year, taipei_now

logger = logging.getLogger("semester")

Semester = Tuple[int, int]

DEFAULT_COUNT = 4


def current_semester(now: datetime) -> Semester:
    """The semester in progress (or just ended) at ``now``."""
    year = roc_year(now)
    if 2 <= now.month <= 8:
        return year - 1, 2
    if now.month >= 9:
        return year, 1
    return year - 1, 1


def previous(semester: Semester) -> Semester:
    year, term = semester
    return (year, 1) if term == 2 else (year - 1, 2)


def calendar_semesters(now: datetime, count: int = DEFAULT_COUNT) -> List[Semester]:
    """
    ``count`` semesters newest first, by calendar rules alone.

    2025-03 -> [(113, 2), (113, 1), (112, 2), (112, 1)]
    2025-11 -> [(114, 1), (113, 2), (113, 1), (112, 2)]
    """
    out = [current_semester(now)]
    while len(out) < count:
        out.append(previous(out[-1]))
    return out


class SemesterDetector:
    """
    The most recent semesters that actually have course data.

    Calendar rules give the candidates; the newest one is checked against
    the store and then upstream, and the window shifts back one semester
    when it has not been published yet. The answer is cached until the
    calendar moves on or ``refresh`` is called.
    """

    def __init__(
        self,
        store: Store,
        scraper: Optional[ScraperClient] = None,
        now: Callable[[], datetime] = taipei_now,
        count: int = DEFAULT_COUNT,
    ) -> None:
        self._store = store
        self._scraper = scraper
        self._now = now
        self._count = count
        self._cached: Optional[List[Semester]] = None
        self._cached_for: Optional[Semester] = None
        self._lock = asyncio.Lock()

    async def _has_data(self, semester: Semester) -> bool:
        year, term = semester
        if await self._store.has_courses(year, term):
            return True
        if self._scraper is None:
            return False
        try:
            return await probe_courses_exist(self._scraper, year, term)
        except ScraperError as e:
            # Unknown is not "empty": keep the calendar answer
            logger.warning("Semester probe %d-%d failed: %s", year, term, e)
            return True

    async def refresh(self) -> List[Semester]:
        async with self._lock:
            candidates = calendar_semesters(self._now(), self._count + 1)
            if await self._has_data(candidates[0]):
                result = candidates[:self._count]
            else:
                logger.info("No courses for %d-%d yet, shifting back one semester", *candidates[0])
                result = candidates[1:]
            self._cached = result
            self._cached_for = candidates[0]
            return list(result)

    async def semesters(self) -> List[Semester]:
        if self._cached is not None and self._cached_for == current_semester(self._now()):
            return list(self._cached)
        return await self.refresh()

    async def recent(self, n: int = 2) -> List[Semester]:
        return (await self.semesters())[:n]
