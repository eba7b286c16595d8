# =============================================================================
# Purpose:
#   The request pipeline between the webhook endpoint and the handlers.
#
# Responsibilities:
#   - Stamp tracing values (chat / user / quote token) for every event.
#   - Admit per chat, sanitize, answer help / stickers / follow / join.
#   - Run keyword dispatch, then NLU, inside a processing deadline.
#   - Map every classified error to a user-visible reply and a metric.
# =============================================================================

import asyncio
import logging
from typing import Awaitable, List, Optional

from common.config import Settings

from . import messages, tracing
from .errors import (
    BotError,
    DispatchError,
    InputError,
    NLUError,
    PostbackError,
    RateLimited,
    ScraperError,
    UnknownModule,
    is_upstream_failure,
)
from .handlers import Dispatcher
from .metrics import Metrics
from .models import Event, Source
from .nlu import IntentParser, ParseResult
from .postback import decode
from .ratelimit import KeyedLimiter
from .sticker import StickerManager
from .text import sanitize, strip_mentions

logger = logging.getLogger("processor")

BOT_NAME = "NTPU 小工具"
STICKER_SENDER = "貼圖小幫手"
HELP_KEYWORDS = ("使用說明", "help")

# Fallback contexts for the help reply
FALLBACK_GENERIC = ""
FALLBACK_NLU_DISABLED = "nlu_off"
FALLBACK_NLU_FAILED = "nlu_failed"
FALLBACK_DISPATCH_FAILED = "dispatch"

_FALLBACK_TITLES = {
    FALLBACK_NLU_DISABLED: ("📖 請使用關鍵字", "目前僅支援關鍵字查詢"),
    FALLBACK_NLU_FAILED: ("😅 無法理解訊息", "請試著換個方式說明，或使用關鍵字"),
    FALLBACK_DISPATCH_FAILED: ("⚠️ 處理失敗", "系統暫時無法處理此請求"),
}

KEYWORD_EXAMPLES = (
    "📚 課程 微積分 / 課程 王小明\n"
    "🔮 找課 想學資料分析\n"
    "🎓 學號 412345678 / 學生 王小明\n"
    "🏫 系 資工 / 學年 112\n"
    "📞 聯絡 資工系 / 緊急\n"
    "🎯 學程 金融 / 學程列表\n"
    "📊 額度 / 額度說明"
)
NLU_EXAMPLES = "💬 直接問我\n• 微積分的課有哪些\n• 王小明的學號\n• 資工系電話"
DATA_SOURCES = "📊 資料來源：課程查詢系統、數位學苑 2.0、校園聯絡簿"

TOO_LONG_MESSAGE = "❌ 訊息內容過長\n\n訊息長度超過 {limit} 字元，請縮短後重試。"
RATE_LIMITED_MESSAGE = "⏳ 訊息過於頻繁，請稍後再試\n💡 稍等幾秒後即可繼續使用"
LLM_RATE_LIMITED_MESSAGE = (
    "⏳ 今日 AI 對話額度已用完\n\n"
    "仍可使用關鍵字查詢：\n• 課程 微積分\n• 學號 王小明\n• 聯絡 資工系\n• 學程 金融"
)
POSTBACK_TOO_LONG_MESSAGE = "❌ 操作資料異常\n\n請使用下方按鈕重新操作"
POSTBACK_INVALID_MESSAGE = "⚠️ 操作已過期或無效\n\n請使用下方按鈕重新操作"
TIMEOUT_MESSAGE = "⏱️ 處理逾時\n\n查詢花費的時間太長，請稍後再試一次。"
UPSTREAM_MESSAGE = "⚠️ 資料來源暫時無法使用\n\n學校網站目前沒有回應，請稍後再試。"
GENERIC_FAILURE_MESSAGE = "❌ 系統發生錯誤\n\n請稍後再試，若持續發生請回報問題。"


class Processor:
    """
    One instance per process. Every public ``process_*`` method returns the
    reply messages for one event (possibly empty) and never raises for
    handler or upstream failures.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        settings: Settings,
        metrics: Metrics,
        stickers: StickerManager,
        user_limiter: KeyedLimiter,
        llm_limiter: Optional[KeyedLimiter] = None,
        nlu: Optional[IntentParser] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.settings = settings
        self.metrics = metrics
        self.stickers = stickers
        self.user_limiter = user_limiter
        self.llm_limiter = llm_limiter
        self.nlu = nlu

    @property
    def nlu_enabled(self) -> bool:
        return self.nlu is not None and self.nlu.is_enabled()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def process_event(self, event: Event) -> List[messages.Message]:
        if event.type == "message":
            return await self.process_message(event)
        if event.type == "postback":
            return await self.process_postback(event)
        if event.type in ("follow", "join"):
            return self.process_follow(event)
        logger.debug("Ignoring %s event", event.type)
        return []

    async def process_message(self, event: Event) -> List[messages.Message]:
        source = event.source or Source(type="user")
        content = event.message
        if content is None:
            return []
        quote_token = (content.quote_token or "") if content.type in ("text", "sticker") else ""
        tracing.inject(source.chat_id, source.user_id or "", quote_token)

        try:
            self.user_limiter.acquire(source.chat_id)
        except RateLimited as e:
            return self._rate_limited(source, RATE_LIMITED_MESSAGE, e)

        if content.type == "sticker":
            if not source.is_personal:
                return []
            logger.info("Sticker received; replying with a random sticker")
            msg = self.stickers.reply()
            msg["sender"] = self.stickers.sender(STICKER_SENDER)
            return [msg]
        if content.type != "text":
            return []

        try:
            text = self._clean_text(content.text or "")
        except InputError as e:
            logger.warning("Rejected text message: %s", e)
            self.metrics.record_error(e.kind)
            return self._text(TOO_LONG_MESSAGE.format(limit=self.settings.max_input_length))
        if not text:
            return []
        logger.info("Received text message")

        if text.lower() in HELP_KEYWORDS:
            return messages.attach_quote_token(self.help_messages(), quote_token)

        out = await self._guarded(self._handle_text(event, source, text))
        return messages.attach_quote_token(out, quote_token)

    async def process_postback(self, event: Event) -> List[messages.Message]:
        source = event.source or Source(type="user")
        tracing.inject(source.chat_id, source.user_id or "")
        data = (event.postback.data if event.postback else "").strip()
        if not data:
            return []
        try:
            self._check_postback(data)
        except InputError as e:
            logger.warning("Rejected postback: %s", e)
            self.metrics.record_error(e.kind)
            return self._text(POSTBACK_TOO_LONG_MESSAGE, self._main_nav())

        if sanitize(data).lower() in HELP_KEYWORDS:
            return self.help_messages()

        try:
            self.user_limiter.acquire(source.chat_id)
        except RateLimited as e:
            return self._rate_limited(source, RATE_LIMITED_MESSAGE, e)

        logger.info("Received postback")
        return await self._guarded(self._handle_postback(data))

    def process_follow(self, event: Event) -> List[messages.Message]:
        source = event.source or Source(type="user")
        tracing.inject(source.chat_id, source.user_id or "")
        logger.info("%s event received", event.type.capitalize())
        return [self.welcome_message()]

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------
    def _clean_text(self, raw: str) -> str:
        if len(raw) > self.settings.max_input_length:
            raise InputError(f"text message exceeds {self.settings.max_input_length} characters")
        return sanitize(raw)

    def _check_postback(self, data: str) -> None:
        if len(data.encode("utf-8")) > self.settings.max_postback_bytes:
            raise InputError(f"postback data exceeds {self.settings.max_postback_bytes} bytes")

    def _rate_limited(self, source: Source, body: str, err: RateLimited) -> List[messages.Message]:
        logger.warning("Rate limit exceeded: %s", err)
        self.metrics.record_error(err.kind)
        if not source.is_personal:
            return []
        return self._text(body, self._main_nav())

    async def _guarded(self, work: Awaitable[List[messages.Message]]) -> List[messages.Message]:
        """
        Run ``work`` in a fresh context carrying only the tracing values and
        bounded by the webhook timeout; turn failures into replies.
        """
        task = asyncio.get_running_loop().create_task(work, context=tracing.preserve_tracing())
        try:
            async with asyncio.timeout(self.settings.webhook_timeout):
                out = await task
        except TimeoutError:
            logger.warning("Processing exceeded %.1fs", self.settings.webhook_timeout)
            self.metrics.record_error("timeout")
            return self._text(TIMEOUT_MESSAGE, self._main_nav())
        except ScraperError as e:
            self.metrics.record_error(e.kind)
            if is_upstream_failure(e):
                logger.error("Upstream unavailable: %s", e)
                return self._text(UPSTREAM_MESSAGE, self._main_nav())
            logger.exception("Scraper failure")
            return self._text(GENERIC_FAILURE_MESSAGE, self._main_nav())
        except PostbackError as e:
            logger.warning("Postback rejected: %s", e)
            self.metrics.record_error(e.kind)
            return self._text(POSTBACK_INVALID_MESSAGE, self._main_nav())
        except BotError as e:
            logger.exception("Handler failed")
            self.metrics.record_error(e.kind)
            return self._text(GENERIC_FAILURE_MESSAGE, self._main_nav())
        except Exception:
            logger.exception("Unhandled error while processing event")
            self.metrics.record_error("internal")
            return self._text(GENERIC_FAILURE_MESSAGE, self._main_nav())
        return messages.limit_envelope(out, self.settings.max_messages_per_reply)

    async def _handle_text(self, event: Event, source: Source, text: str) -> List[messages.Message]:
        out = await self.dispatcher.dispatch_message(text)
        if out:
            return out

        if not source.is_personal:
            content = event.message
            mentions = content.mention.mentionees if content and content.mention else []
            own = [(m.index, m.length) for m in mentions if m.is_self]
            if not own:
                return []
            text = sanitize(strip_mentions(content.text or "", own))
            if not text:
                return self.help_messages(FALLBACK_GENERIC)
            # "@bot 課程 微積分": the keyword only leads once the mention is gone
            out = await self.dispatcher.dispatch_message(text)
            if out:
                return out

        if not self.nlu_enabled:
            return self.help_messages(FALLBACK_NLU_DISABLED)
        return await self._handle_nlu(source, text)

    async def _handle_nlu(self, source: Source, text: str) -> List[messages.Message]:
        if self.llm_limiter is not None:
            try:
                self.llm_limiter.acquire(source.chat_id)
            except RateLimited as e:
                return self._rate_limited(source, LLM_RATE_LIMITED_MESSAGE, e)
        try:
            result = await self.nlu.parse(text)
        except NLUError as e:
            logger.warning("NLU intent parsing failed: %s", e)
            self.metrics.record_error(e.kind)
            return self.help_messages(FALLBACK_NLU_FAILED)
        return await self._dispatch_intent(result)

    async def _dispatch_intent(self, result: ParseResult) -> List[messages.Message]:
        if result.is_help:
            return self.help_messages()
        if result.is_direct_reply:
            body = result.params.get("message", "")
            if not body:
                logger.warning("direct_reply without a message")
                return self.help_messages(FALLBACK_GENERIC)
            return self._text(body, self._main_nav())
        try:
            handler = self.dispatcher.get_handler(result.module)
            return await handler.dispatch_intent(result.intent, result.params)
        except (UnknownModule, DispatchError) as e:
            logger.warning("Dispatch of %s/%s failed: %s", result.module, result.intent, e)
            self.metrics.record_error(e.kind)
            return self.help_messages(FALLBACK_DISPATCH_FAILED)

    async def _handle_postback(self, data: str) -> List[messages.Message]:
        pb = decode(data)
        out = await self.dispatcher.dispatch_postback(pb)
        if out:
            return out
        return self._text(POSTBACK_INVALID_MESSAGE, self._main_nav())

    # ------------------------------------------------------------------
    # Canned replies
    # ------------------------------------------------------------------
    def _sender(self):
        return self.stickers.sender(BOT_NAME)

    def _text(self, body: str, quick_reply=None) -> List[messages.Message]:
        return [messages.text(body, sender=self._sender(), quick_reply=quick_reply)]

    def _main_nav(self) -> List[dict]:
        return [
            messages.message_action("📚 課程", "課程"),
            messages.message_action("🎓 學號", "學號"),
            messages.message_action("📞 聯絡", "聯絡"),
            messages.message_action("🎯 學程", "學程列表"),
            messages.message_action("🚨 緊急", "緊急"),
            messages.message_action("📖 使用說明", "使用說明"),
        ]

    def help_messages(self, context: Optional[str] = None) -> List[messages.Message]:
        """
        ``context`` None gives the full usage guide; any fallback context
        gives one short message explaining why the input was not handled.
        """
        if context is None:
            parts = []
            if self.nlu_enabled:
                parts.append("🤖 AI 模式\n直接用自然語言問我\n\n" + NLU_EXAMPLES)
            parts.append("⌨️ 關鍵字模式\n\n" + KEYWORD_EXAMPLES)
            parts.append(
                "💡 小提示\n• 關鍵字與內容之間加上空白\n• 課號可直接輸入（如 U0001）\n"
                "• 群組中請先 @我 再提問\n\n" + DATA_SOURCES
            )
            out = [messages.text(p, sender=self._sender()) for p in parts]
            messages.with_quick_reply(out[-1], self._main_nav())
            return out

        default_sub = "直接對話或使用關鍵字查詢" if self.nlu_enabled else "使用關鍵字快速查詢"
        title, sub = _FALLBACK_TITLES.get(context, (f"🔍 {BOT_NAME}", default_sub))
        body = f"{title}\n{sub}\n\n"
        if self.nlu_enabled:
            body += NLU_EXAMPLES + "\n\n"
        body += "⌨️ 關鍵字\n" + KEYWORD_EXAMPLES
        return self._text(body, self._main_nav())

    def welcome_message(self) -> messages.Message:
        rows = [
            ("課程", "課程 微積分"),
            ("智慧搜尋", "找課 資料分析"),
            ("學號", "學號 王小明"),
            ("聯絡", "聯絡 資工系"),
            ("學程", "學程 金融"),
        ]
        if self.nlu_enabled:
            rows.insert(0, ("AI", "支援自然語言對話"))
        card = messages.bubble(
            f"我是 {BOT_NAME} 🔍",
            rows,
            subtitle=DATA_SOURCES,
            badge="泥好~~",
            buttons=[messages.message_action("📖 使用說明", "使用說明")],
        )
        msg = messages.carousel(f"歡迎使用 {BOT_NAME}", [card])
        msg["sender"] = self._sender()
        return messages.with_quick_reply(msg, self._main_nav())
