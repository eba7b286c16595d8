"""
Handler contract and shared dependencies.

Every domain handler declares:
- ``name``: module name, also the postback namespace
- ``can_handle(text)``: keyword / pattern claim on sanitized text
- ``handle_message(text)``: keyword path
- ``handle_postback(pb)``: follow-up buttons of this module
- ``intents``: intent name -> required parameters, served by
  ``dispatch_intent`` for the NLU path

Handlers return reply messages. Upstream failures propagate as ScraperError
and are turned into replies by the processor.
"""

import abc
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from common.config import Settings

from .. import messages
from ..errors import MissingParameter, UnknownIntent
from ..metrics import Metrics
from ..postback import Postback
from ..scraper import ScraperClient
from ..sticker import StickerManager
from ..store import Store

Message = messages.Message

# Taiwan has no DST
TAIPEI = timezone(timedelta(hours=8), "Asia/Taipei")


def taipei_now() -> datetime:
    return datetime.now(TAIPEI)


def roc_year(now: datetime) -> int:
    return now.year - 1911


@dataclass
class Deps:
    """Collaborators shared by all handlers; built once at startup."""
    store: Store
    scraper: ScraperClient
    metrics: Metrics
    stickers: StickerManager
    settings: Settings
    now: Callable[[], datetime] = field(default=taipei_now)


class Handler(abc.ABC):
    name: str = ""
    sender_name: str = ""
    # intent -> required parameter names
    intents: Mapping[str, Tuple[str, ...]] = {}

    def __init__(self, deps: Deps) -> None:
        self.deps = deps
        self.store = deps.store
        self.scraper = deps.scraper
        self.metrics = deps.metrics
        self.settings = deps.settings
        self.logger = logging.getLogger(f"handlers.{self.name}")

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------
    @abc.abstractmethod
    def can_handle(self, text: str) -> bool:
        ...

    @abc.abstractmethod
    async def handle_message(self, text: str) -> List[Message]:
        ...

    async def handle_postback(self, pb: Postback) -> List[Message]:
        return []

    async def dispatch_intent(self, intent: str, params: Mapping[str, Any]) -> List[Message]:
        """
        Validate ``intent`` and its required parameters, then delegate to
        ``intent_<name>``, which shares its implementation with the keyword path.
        """
        required = self.intents.get(intent)
        if required is None:
            raise UnknownIntent(self.name, intent)
        cleaned: Dict[str, str] = {}
        for key, value in params.items():
            cleaned[key] = str(value).strip() if value is not None else ""
        for param in required:
            if not cleaned.get(param):
                raise MissingParameter(param)
        method = getattr(self, f"intent_{intent}")
        return await method(cleaned)

    # ------------------------------------------------------------------
    # Reply helpers
    # ------------------------------------------------------------------
    def sender(self) -> Dict[str, str]:
        return self.deps.stickers.sender(self.sender_name)

    def reply_text(self, body: str, quick_reply: Optional[Sequence[Dict[str, Any]]] = None) -> List[Message]:
        return [messages.text(body, sender=self.sender(), quick_reply=quick_reply)]

    def now(self) -> datetime:
        return self.deps.now()

    def record_cache(self, hit: bool) -> None:
        self.metrics.record_cache(self.name, hit)

    def observe(self, started: float) -> None:
        self.metrics.observe_handler(self.name, time.monotonic() - started)


def help_action() -> Dict[str, Any]:
    return messages.message_action("📖 使用說明", "使用說明")
