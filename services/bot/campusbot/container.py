# =============================================================================
# Purpose:
#   Build the object graph once at startup and own its lifecycle.
#
# Responsibilities:
#   - Construct store, scraper, metrics, limiters, NLU, handlers, processor.
#   - Register handlers in their claim order (contact, course, student, program, usage).
#   - Start / stop background loops (limiter cleanup, store sweep, warm-up).
# =============================================================================

import asyncio
import logging
from typing import List, Optional

import httpx

from common.config import Settings

from .handlers import (
    ContactHandler,
    CourseHandler,
    Deps,
    Dispatcher,
    ProgramHandler,
    SemesterDetector,
    StudentHandler,
    UsageHandler,
)
from .line import LineClient
from .metrics import Metrics
from .nlu import IntentParser, providers_from_settings
from .processor import Processor
from .ratelimit import KeyedLimiter, LimiterConfig
from .scraper import ScraperClient
from .smart import SmartIndex
from .sticker import StickerManager
from .store import Store
from .warmup import Readiness, Warmup

logger = logging.getLogger("container")


class Container:
    def __init__(
        self,
        settings: Settings,
        *,
        metrics: Optional[Metrics] = None,
        store: Optional[Store] = None,
        scraper: Optional[ScraperClient] = None,
        http: Optional[httpx.AsyncClient] = None,
        stickers: Optional[StickerManager] = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics or Metrics()
        self.store = store or Store(
            settings.store_path,
            ttl=settings.cache_ttl_seconds,
            historical_ttl=settings.historical_ttl_seconds,
        )
        self.scraper = scraper or ScraperClient.from_settings(settings, metrics=self.metrics)
        # Shared client for the LINE reply API and the LLM providers
        self.http = http or httpx.AsyncClient(timeout=settings.llm_timeout)
        self.stickers = stickers or StickerManager()

        self.user_limiter = KeyedLimiter(LimiterConfig(
            name="user",
            burst=settings.user_rate_burst,
            refill_rate=settings.user_rate_refill,
            cleanup_interval=settings.limiter_cleanup_seconds,
        ), metrics=self.metrics)
        self.llm_limiter = KeyedLimiter(LimiterConfig(
            name="llm",
            burst=settings.llm_rate_burst,
            refill_rate=settings.llm_rate_refill,
            daily_limit=settings.llm_daily_limit,
            cleanup_interval=settings.limiter_cleanup_seconds,
        ), metrics=self.metrics)

        self.nlu = IntentParser(
            providers_from_settings(settings), self.http, metrics=self.metrics, timeout=settings.llm_timeout,
        )
        expander = self.nlu if self.nlu.is_enabled() else None

        self.detector = SemesterDetector(self.store, self.scraper)
        self.smart = SmartIndex()
        deps = Deps(
            store=self.store,
            scraper=self.scraper,
            metrics=self.metrics,
            stickers=self.stickers,
            settings=settings,
        )
        self.dispatcher = Dispatcher(self.metrics)
        self.dispatcher.register(ContactHandler(deps))
        self.dispatcher.register(CourseHandler(
            deps, self.detector, smart=self.smart, expander=expander, llm_limiter=self.llm_limiter,
        ))
        self.dispatcher.register(StudentHandler(deps))
        self.dispatcher.register(ProgramHandler(deps, self.detector))
        self.dispatcher.register(UsageHandler(deps, self.user_limiter, self.llm_limiter))

        self.processor = Processor(
            self.dispatcher,
            settings,
            self.metrics,
            self.stickers,
            self.user_limiter,
            llm_limiter=self.llm_limiter,
            nlu=self.nlu,
        )
        self.line = LineClient(settings.line_channel_access_token, self.http, settings.line_api_base)
        self.warmup = Warmup(self.store, self.scraper, self.metrics, detector=self.detector, smart=self.smart)
        self.readiness = Readiness(settings.warmup_timeout)

        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self, *, background: bool = True) -> None:
        """
        Open the store and build the ranked index from whatever is cached.
        With ``background`` the periodic loops and the warm-up are started too.
        """
        await self.store.init()
        try:
            semesters = await self.detector.semesters()
            await self.smart.rebuild(self.store, semesters)
        except Exception as e:
            logger.warning("Initial smart index build skipped: %s", e)
        if not background:
            return

        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self.user_limiter.run_cleanup(self._stop), name="user-limiter-cleanup"),
            asyncio.create_task(self.llm_limiter.run_cleanup(self._stop), name="llm-limiter-cleanup"),
            asyncio.create_task(self.store.run_sweeper(self.settings.sweep_interval_seconds, self._stop), name="sweeper"),
        ]
        if self.settings.warmup_modules:
            self._tasks.append(self.warmup.run_in_background(
                self.settings.warmup_modules, timeout=self.settings.warmup_timeout, readiness=self.readiness,
            ))
        else:
            self.readiness.mark_ready()

    async def stop(self) -> None:
        """Stop loops (bounded by the shutdown timeout) and release resources."""
        self._stop.set()
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=self.settings.shutdown_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("Cancelled %d background task(s) at shutdown", len(pending))
        self._tasks = []
        await self.scraper.close()
        await self.http.aclose()
        await self.store.close()
