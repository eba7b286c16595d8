import logging
import time
from typing import Dict, List, Optional

from ..errors import UnknownModule
from ..metrics import Metrics
from ..postback import Postback
from .base import Handler, Message

logger = logging.getLogger("dispatcher")


class Dispatcher:
    """
    Ordered handler registry. Registration order is the claim order for
    keyword messages and is fixed at startup.
    """

    def __init__(self, metrics: Optional[Metrics] = None) -> None:
        self._handlers: List[Handler] = []
        self._by_name: Dict[str, Handler] = {}
        self._metrics = metrics

    def register(self, handler: Handler) -> None:
        if not handler.name:
            raise ValueError("handler has no name")
        if handler.name in self._by_name:
            raise ValueError(f"handler {handler.name!r} registered twice")
        self._handlers.append(handler)
        self._by_name[handler.name] = handler
        logger.info("Registered handler %s", handler.name)

    @property
    def handlers(self) -> List[Handler]:
        return list(self._handlers)

    def get_handler(self, module: str) -> Handler:
        try:
            return self._by_name[module]
        except KeyError:
            raise UnknownModule(module) from None

    def _observe(self, module: str, started: float) -> None:
        if self._metrics is not None:
            self._metrics.observe_handler(module, time.monotonic() - started)

    async def dispatch_message(self, text: str) -> List[Message]:
        """First non-empty reply from a handler that claims ``text``."""
        for handler in self._handlers:
            if not handler.can_handle(text):
                continue
            started = time.monotonic()
            try:
                result = await handler.handle_message(text)
            finally:
                self._observe(handler.name, started)
            if result:
                return result
        return []

    async def dispatch_postback(self, pb: Postback) -> List[Message]:
        """Route by module name; unknown modules yield no reply."""
        handler = self._by_name.get(pb.module)
        if handler is None:
            logger.info("Postback for unknown module %s", pb.module)
            return []
        started = time.monotonic()
        try:
            return await handler.handle_postback(pb)
        finally:
            self._observe(handler.name, started)
