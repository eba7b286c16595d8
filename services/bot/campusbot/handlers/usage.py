"""
Quota status for the current chat: message tokens left in the user
limiter, and the short-term and daily AI quota of the LLM limiter.
"""

import math
from typing import List, Mapping, Optional

from .. import messages, tracing
from ..postback import Postback, make
from ..ratelimit import KeyedLimiter, Usage
from ..text import build_keyword_regex
from .base import Deps, Handler, Message, help_action

USAGE_KEYWORDS = ("用量", "配額", "額度", "扣打", "quota", "usage", "limit")
EXPLAIN_TEXT = "額度說明"

EXPLANATION_ROWS = (
    ("⚡ 訊息額度", "每則訊息都會扣除 1 次，包括文字、貼圖等。"),
    ("🤖 AI 額度", "自然語言對話（非關鍵字查詢）與智慧搜尋（找課）會扣除 AI 額度。"),
    ("💡 小技巧", "使用關鍵字查詢不扣 AI 額度。"),
)


def _refill_text(rate: float) -> str:
    seconds = 1.0 / rate
    if seconds >= 1:
        return f"每 {seconds:.0f} 秒恢復 1 次"
    return f"每秒恢復 {rate:.1f} 次"


def _count(usage: Usage) -> str:
    return f"{math.floor(usage.available)} / {usage.burst} 次"


class UsageHandler(Handler):
    name = "usage"
    sender_name = "額度小幫手"
    intents = {"query": ()}

    def __init__(self, deps: Deps, user_limiter: KeyedLimiter, llm_limiter: Optional[KeyedLimiter] = None) -> None:
        super().__init__(deps)
        self.user_limiter = user_limiter
        self.llm_limiter = llm_limiter
        self._keyword_re = build_keyword_regex(USAGE_KEYWORDS)

    def can_handle(self, text: str) -> bool:
        return bool(self._keyword_re.match(text.strip()))

    async def handle_message(self, text: str) -> List[Message]:
        if text.strip().lower() == EXPLAIN_TEXT:
            return [self.explanation()]
        return [self.status(tracing.current().chat_id)]

    async def handle_postback(self, pb: Postback) -> List[Message]:
        if pb.action == "query":
            return [self.status(tracing.current().chat_id)]
        self.logger.info("Unknown usage postback action %s", pb.action)
        return []

    async def intent_query(self, params: Mapping[str, str]) -> List[Message]:
        return [self.status(tracing.current().chat_id)]

    def status(self, chat_id: str) -> Message:
        user = self.user_limiter.usage(chat_id)
        rows = [("⚡ 訊息額度", f"可用 {_count(user)}，{_refill_text(user.refill_rate)}")]
        if self.llm_limiter is not None:
            llm = self.llm_limiter.usage(chat_id)
            rows.append(("🤖 AI 短期額度", f"可用 {_count(llm)}，每小時恢復 {llm.refill_rate * 3600:.0f} 次"))
            if llm.daily_limit > 0:
                rows.append(("📅 AI 每日額度", f"可用 {llm.daily_remaining} / {llm.daily_limit} 次，滾動 24 小時計算"))
        card = messages.bubble(
            "使用額度狀態",
            rows,
            badge="📊 額度",
            buttons=[messages.message_action("❓ 額度說明", EXPLAIN_TEXT), help_action()],
        )
        msg = messages.carousel("使用額度狀態", [card])
        msg["sender"] = self.sender()
        return msg

    def explanation(self) -> Message:
        card = messages.bubble(
            EXPLAIN_TEXT,
            EXPLANATION_ROWS,
            badge="❓ 說明",
            buttons=[messages.postback_action("📊 查看額度", make(self.name, "query"), "額度")],
        )
        msg = messages.carousel(EXPLAIN_TEXT, [card])
        msg["sender"] = self.sender()
        return msg
