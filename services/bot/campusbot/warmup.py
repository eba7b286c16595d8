# =============================================================================
# Purpose:
#   Bulk ingestion ("warm-up") of the cache from the upstream sites.
#
# Responsibilities:
#   - Run the requested modules (id, contact, course, program) concurrently.
#   - Optionally purge the cache first.
#   - Collect per-module counts and errors instead of failing fast.
#   - Refresh the semester window and the ranked index after course data.
#   - Track bootstrap readiness for /healthz.
# =============================================================================

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence

from common.config import KNOWN_WARMUP_MODULES

from .errors import ScraperError
from .handlers.base import roc_year, taipei_now
from .handlers.semester import SemesterDetector
from .metrics import Metrics
from .models import WarmupReport
from .scraper import ScraperClient
from .sites import contacts as contact_site
from .sites import courses as course_site
from .sites import programs as program_site
from .sites import students as student_site
from .smart import SmartIndex
from .store import CONTACT, COURSE, PROGRAM, STUDENT, Store

logger = logging.getLogger("warmup")

# LMS 2.0 holds no data from 113 on; older years are fetched on demand
ID_FIRST_YEAR = 101
ID_LAST_YEAR = 112
ID_DEPARTMENTS = (
    "71", "712", "714", "716", "72", "73", "742", "744",
    "75", "76", "77", "78", "79", "80", "81", "82", "83", "84", "85", "86", "87",
)
COURSE_YEARS = 2


def parse_modules(raw: str) -> List[str]:
    """
    "id, Contact,,course" -> ["id", "contact", "course"]; unknown names are
    dropped with a warning, duplicates are removed.
    """
    out: List[str] = []
    for part in raw.split(","):
        name = part.strip().lower()
        if not name or name in out:
            continue
        if name not in KNOWN_WARMUP_MODULES:
            logger.warning("Unknown warm-up module %r, skipping", name)
            continue
        out.append(name)
    return out


class Readiness:
    """
    Bootstrap state for /healthz: ready once the first warm-up finished, or
    once ``timeout`` seconds passed so a slow upstream cannot keep the
    service unready forever.
    """

    def __init__(self, timeout: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._timeout = timeout
        self._clock = clock
        self._started = clock()
        self._done = False

    def mark_ready(self) -> None:
        self._done = True

    @property
    def warmup_done(self) -> bool:
        return self._done

    @property
    def ready(self) -> bool:
        return self._done or (self._clock() - self._started) >= self._timeout


class Warmup:
    def __init__(
        self,
        store: Store,
        scraper: ScraperClient,
        metrics: Optional[Metrics] = None,
        *,
        detector: Optional[SemesterDetector] = None,
        smart: Optional[SmartIndex] = None,
        now=taipei_now,
    ) -> None:
        self.store = store
        self.scraper = scraper
        self.metrics = metrics
        self.detector = detector
        self.smart = smart
        self.now = now

    # ------------------------------------------------------------------
    # Modules
    # ------------------------------------------------------------------
    async def warm_id(self) -> int:
        last_year = min(ID_LAST_YEAR, roc_year(self.now()))
        total = 0
        failures = 0
        for year in range(last_year, ID_FIRST_YEAR - 1, -1):
            for code in ID_DEPARTMENTS:
                try:
                    students = await student_site.fetch_students(self.scraper, year, code)
                except ScraperError as e:
                    logger.warning("Students %d/%s failed: %s", year, code, e)
                    failures += 1
                    continue
                total += await self.store.save_batch(STUDENT, students)
            logger.info("ID warm-up reached year %d (%d students)", year, total)
        if failures:
            logger.warning("ID warm-up finished with %d failed list(s)", failures)
            if not total:
                raise ScraperError(f"{failures} student list(s) failed")
        return total

    async def warm_contact(self) -> int:
        """Administrative and academic directories; fails only when both fail."""
        total = 0
        errors: List[ScraperError] = []
        for kind in (contact_site.KIND_ADMINISTRATIVE, contact_site.KIND_ACADEMIC):
            try:
                found = await contact_site.fetch_directory(self.scraper, kind)
            except ScraperError as e:
                logger.warning("Contact directory %s failed: %s", kind, e)
                errors.append(e)
                continue
            total += await self.store.save_batch(CONTACT, found)
            logger.info("Contact directory %s cached: %d", kind, len(found))
        if len(errors) == 2:
            raise errors[-1]
        return total

    async def warm_course(self) -> int:
        """Whole academic years (both terms) for the current and previous year."""
        current = roc_year(self.now())
        total = 0
        failures = 0
        for year in range(current, current - COURSE_YEARS, -1):
            try:
                courses = await course_site.fetch_semester(self.scraper, year, 0)
            except ScraperError as e:
                logger.warning("Courses for %d failed: %s", year, e)
                failures += 1
                continue
            total += await self.store.save_batch(COURSE, courses)
            logger.info("Courses cached for %d: %d", year, len(courses))
        if failures == COURSE_YEARS:
            raise ScraperError("no course year could be fetched")
        if self.detector is not None:
            semesters = await self.detector.refresh()
            if self.smart is not None:
                await self.smart.rebuild(self.store, semesters)
        return total

    async def warm_program(self) -> int:
        found = await program_site.fetch_programs(self.scraper)
        return await self.store.save_batch(PROGRAM, found)

    # ------------------------------------------------------------------
    # Runner
    # ------------------------------------------------------------------
    def _module(self, name: str) -> Callable[[], Awaitable[int]]:
        return {
            "id": self.warm_id,
            "contact": self.warm_contact,
            "course": self.warm_course,
            "program": self.warm_program,
        }[name]

    async def run(self, modules: Sequence[str], *, reset: bool = False, timeout: Optional[float] = None) -> WarmupReport:
        report = WarmupReport()
        started = time.monotonic()
        if reset:
            logger.warning("Resetting cache data")
            await self.store.purge()

        async def one(name: str) -> None:
            try:
                count = await self._module(name)()
            except ScraperError as e:
                logger.error("Warm-up module %s failed: %s", name, e)
                report.errors.append(f"{name}: {e}")
                return
            report.counts[name] = count
            if self.metrics is not None:
                self.metrics.record_warmup(name, count)

        names = [m for m in modules if m in KNOWN_WARMUP_MODULES]
        try:
            async with asyncio.timeout(timeout):
                await asyncio.gather(*(one(n) for n in names))
        except TimeoutError:
            report.errors.append(f"warm-up exceeded {timeout:.0f}s")
            logger.error("Warm-up exceeded %.0fs", timeout)

        logger.info(
            "Cache warming complete in %.1fs: %s",
            time.monotonic() - started,
            ", ".join(f"{k}={v}" for k, v in report.counts.items()) or "nothing cached",
        )
        if report.errors:
            logger.warning("Warm-up finished with %d error(s)", len(report.errors))
        return report

    def run_in_background(
        self,
        modules: Iterable[str],
        *,
        timeout: Optional[float] = None,
        readiness: Optional[Readiness] = None,
    ) -> "asyncio.Task[WarmupReport]":
        """Start ``run`` as a task; ``readiness`` is marked when it ends either way."""
        modules = list(modules)

        async def _run() -> WarmupReport:
            try:
                return await self.run(modules, timeout=timeout)
            finally:
                if readiness is not None:
                    readiness.mark_ready()

        return asyncio.get_running_loop().create_task(_run(), name="warmup")
