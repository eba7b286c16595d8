import asyncio
import dataclasses

import pytest

from campusbot.errors import AllMirrorsFailed, NLUUnavailable, UpstreamHTTPError
from campusbot.handlers import ContactHandler, CourseHandler, Dispatcher, Handler, SemesterDetector, UsageHandler
from campusbot.models import Course
from campusbot.models import Event
from campusbot.nlu import ParseResult
from campusbot.postback import encode, make
from campusbot.processor import (
    LLM_RATE_LIMITED_MESSAGE,
    POSTBACK_INVALID_MESSAGE,
    POSTBACK_TOO_LONG_MESSAGE,
    RATE_LIMITED_MESSAGE,
    TIMEOUT_MESSAGE,
    UPSTREAM_MESSAGE,
    GENERIC_FAILURE_MESSAGE,
    Processor,
)
from campusbot.ratelimit import KeyedLimiter, LimiterConfig
from campusbot.store import COURSE

from conftest import FakeClock, fixed_now

USER = {"type": "user", "userId": "U1"}
GROUP = {"type": "group", "groupId": "G1", "userId": "U1"}


class ScriptedHandler(Handler):
    """Claims every text starting with "test" and answers with ``reply``."""
    name = "scripted"

    def __init__(self, deps, reply) -> None:
        super().__init__(deps)
        self.reply = reply

    def can_handle(self, text: str) -> bool:
        return text.startswith("test")

    async def handle_message(self, text: str):
        return await self.reply(text)


class StubNLU:
    def __init__(self, result=None, error=None) -> None:
        self.result = result
        self.error = error
        self.calls = []

    def is_enabled(self) -> bool:
        return True

    async def parse(self, text: str) -> ParseResult:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.result


def make_processor(deps, *handlers, settings=None, nlu=None, burst=6, llm_burst=0):
    dispatcher = Dispatcher(deps.metrics)
    for handler in handlers:
        dispatcher.register(handler)
    clock = FakeClock()
    user_limiter = KeyedLimiter(LimiterConfig("user", burst, 0.001), deps.metrics, clock)
    llm_limiter = KeyedLimiter(LimiterConfig("llm", llm_burst, 0.001), deps.metrics, clock) if llm_burst else None
    return Processor(
        dispatcher, settings or deps.settings, deps.metrics, deps.stickers,
        user_limiter, llm_limiter=llm_limiter, nlu=nlu,
    )


def text_event(text, source=USER, quote="", mentionees=None):
    message = {"type": "text", "id": "m1", "text": text}
    if quote:
        message["quoteToken"] = quote
    if mentionees is not None:
        message["mention"] = {"mentionees": mentionees}
    return Event.model_validate({"type": "message", "replyToken": "r1", "source": source, "message": message})


def postback_event(data, source=USER):
    return Event.model_validate({"type": "postback", "replyToken": "r1", "source": source, "postback": {"data": data}})


def error_count(deps, kind):
    return deps.metrics.registry.get_sample_value("campusbot_errors_total", {"kind": kind})


# -----------------------------------------------------------------------------
# Canned replies
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_help_quotes_the_user_message(deps):
    processor = make_processor(deps)
    out = await processor.process_event(text_event("使用說明", quote="q-1"))
    assert len(out) == 2
    assert out[0]["quoteToken"] == "q-1"
    assert "關鍵字模式" in out[0]["text"]
    assert "quickReply" in out[-1]


@pytest.mark.asyncio
async def test_follow_gets_a_welcome_card(deps):
    out = await make_processor(deps).process_event(Event.model_validate({"type": "follow", "source": USER}))
    assert len(out) == 1
    assert out[0]["altText"] == "歡迎使用 NTPU 小工具"


@pytest.mark.asyncio
async def test_stickers_only_answered_in_personal_chats(deps):
    processor = make_processor(deps)
    sticker = {"type": "sticker", "id": "s1", "packageId": "1", "stickerId": "2"}
    personal = Event.model_validate({"type": "message", "source": USER, "message": sticker})
    group = Event.model_validate({"type": "message", "source": GROUP, "message": sticker})
    out = await processor.process_event(personal)
    assert out[0]["type"] == "image"
    assert out[0]["sender"]["name"] == "貼圖小幫手"
    assert await processor.process_event(group) == []


@pytest.mark.asyncio
async def test_unknown_events_are_ignored(deps):
    assert await make_processor(deps).process_event(Event.model_validate({"type": "unsend", "source": USER})) == []


# -----------------------------------------------------------------------------
# Admission and input checks
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_rate_limit_reply_in_personal_chat_silence_in_group(deps):
    processor = make_processor(deps, ContactHandler(deps), burst=1)
    first = await processor.process_event(text_event("緊急"))
    assert first[0]["type"] == "flex"
    denied = await processor.process_event(text_event("緊急"))
    assert denied[0]["text"] == RATE_LIMITED_MESSAGE

    assert (await processor.process_event(text_event("緊急", source=GROUP)))[0]["type"] == "flex"
    assert await processor.process_event(text_event("緊急", source=GROUP)) == []
    assert error_count(deps, "rate_limited") == 2.0


@pytest.mark.asyncio
async def test_too_long_input_is_rejected(deps):
    out = await make_processor(deps).process_event(text_event("a" * (deps.settings.max_input_length + 1)))
    assert "訊息內容過長" in out[0]["text"]
    assert error_count(deps, "input") == 1.0


@pytest.mark.asyncio
async def test_blank_text_gets_no_reply(deps):
    assert await make_processor(deps).process_event(text_event("   \t")) == []


# -----------------------------------------------------------------------------
# Groups and NLU
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_group_chat_needs_a_mention_for_free_text(deps):
    processor = make_processor(deps, ContactHandler(deps))
    assert await processor.process_event(text_event("今天天氣如何", source=GROUP)) == []

    mentioned = text_event(
        "@小工具 今天天氣如何", source=GROUP,
        mentionees=[{"index": 0, "length": 4, "type": "user", "isSelf": True}],
    )
    out = await processor.process_event(mentioned)
    assert "目前僅支援關鍵字查詢" in out[0]["text"]

    # keywords still work without a mention
    assert (await processor.process_event(text_event("緊急", source=GROUP)))[0]["type"] == "flex"


@pytest.mark.asyncio
async def test_group_mention_before_a_keyword_reaches_the_handler(deps, store):
    await store.save(COURSE, Course(
        uid="1132U0007", year=113, term=2, no="U0007", title="微積分", teachers=["林老師"],
    ))
    nlu = StubNLU(ParseResult("help"))
    processor = make_processor(
        deps, ContactHandler(deps), CourseHandler(deps, SemesterDetector(store, None, now=fixed_now)), nlu=nlu,
    )
    mentioned = text_event(
        "@小工具 課程 微積分", source=GROUP,
        mentionees=[{"index": 0, "length": 4, "type": "user", "isSelf": True}],
    )
    out = await processor.process_event(mentioned)
    assert out[0]["type"] == "flex"
    assert out[0]["contents"]["contents"][0]["header"]["contents"][1]["text"] == "微積分"
    assert nlu.calls == []


@pytest.mark.asyncio
async def test_free_text_without_nlu_gets_keyword_help(deps):
    out = await make_processor(deps).process_event(text_event("今天天氣如何"))
    assert "目前僅支援關鍵字查詢" in out[0]["text"]


@pytest.mark.asyncio
async def test_nlu_intent_is_dispatched_to_the_module(deps):
    nlu = StubNLU(ParseResult("contact", "emergency"))
    processor = make_processor(deps, ContactHandler(deps), nlu=nlu)
    out = await processor.process_event(text_event("學校出事了要打給誰"))
    assert nlu.calls == ["學校出事了要打給誰"]
    assert out[0]["altText"] == "緊急聯絡電話"


@pytest.mark.asyncio
async def test_nlu_direct_reply_and_failures(deps):
    processor = make_processor(deps, ContactHandler(deps), nlu=StubNLU(ParseResult("direct_reply", "", {"message": "你好！"})))
    assert (await processor.process_event(text_event("嗨")))[0]["text"] == "你好！"

    processor = make_processor(deps, ContactHandler(deps), nlu=StubNLU(error=NLUUnavailable("down")))
    out = await processor.process_event(text_event("嗨"))
    assert "無法理解訊息" in out[0]["text"]
    assert error_count(deps, "nlu_unavailable") == 1.0

    processor = make_processor(deps, ContactHandler(deps), nlu=StubNLU(ParseResult("weather", "today")))
    assert "處理失敗" in (await processor.process_event(text_event("嗨")))[0]["text"]

    processor = make_processor(deps, ContactHandler(deps), nlu=StubNLU(ParseResult("contact", "search", {"query": ""})))
    assert "處理失敗" in (await processor.process_event(text_event("嗨")))[0]["text"]
    assert error_count(deps, "missing_parameter") == 1.0


@pytest.mark.asyncio
async def test_llm_quota_is_separate_from_keyword_quota(deps):
    nlu = StubNLU(ParseResult("help"))
    processor = make_processor(deps, ContactHandler(deps), nlu=nlu, llm_burst=1)
    assert "AI 模式" in (await processor.process_event(text_event("怎麼用")))[0]["text"]
    assert (await processor.process_event(text_event("怎麼用")))[0]["text"] == LLM_RATE_LIMITED_MESSAGE
    # keywords are unaffected
    assert (await processor.process_event(text_event("緊急")))[0]["type"] == "flex"
    assert len(nlu.calls) == 1


# -----------------------------------------------------------------------------
# Failures become replies
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_slow_handler_times_out(deps):
    async def slow(text):
        await asyncio.sleep(5)
        return []

    settings = dataclasses.replace(deps.settings, webhook_timeout=0.05)
    processor = make_processor(deps, ScriptedHandler(deps, slow), settings=settings)
    out = await processor.process_event(text_event("test slow"))
    assert out[0]["text"] == TIMEOUT_MESSAGE
    assert error_count(deps, "timeout") == 1.0


@pytest.mark.asyncio
async def test_upstream_failures_are_classified(deps):
    async def unavailable(text):
        raise AllMirrorsFailed("sea")

    async def not_found(text):
        raise UpstreamHTTPError(404, "https://sea.test/x")

    async def broken(text):
        raise KeyError("boom")

    processor = make_processor(deps, ScriptedHandler(deps, unavailable))
    assert (await processor.process_event(text_event("test")))[0]["text"] == UPSTREAM_MESSAGE
    assert error_count(deps, "all_mirrors_failed") == 1.0

    processor = make_processor(deps, ScriptedHandler(deps, not_found))
    assert (await processor.process_event(text_event("test")))[0]["text"] == GENERIC_FAILURE_MESSAGE

    processor = make_processor(deps, ScriptedHandler(deps, broken))
    assert (await processor.process_event(text_event("test")))[0]["text"] == GENERIC_FAILURE_MESSAGE
    assert error_count(deps, "internal") == 1.0


@pytest.mark.asyncio
async def test_reply_envelope_is_enforced(deps):
    from campusbot import messages

    async def chatty(text):
        return [messages.text(str(i)) for i in range(8)]

    out = await make_processor(deps, ScriptedHandler(deps, chatty)).process_event(text_event("test"))
    assert len(out) == deps.settings.max_messages_per_reply
    assert "部分內容未顯示" in out[-1]["text"]


# -----------------------------------------------------------------------------
# Postbacks
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_postback_is_routed(deps, store):
    from campusbot.models import Contact
    from campusbot.store import CONTACT

    await store.save(CONTACT, Contact(uid="person_a", type="person", name="館員甲", organization="圖書館"))
    processor = make_processor(deps, ContactHandler(deps))
    out = await processor.process_event(postback_event(encode(make("contact", "members", org="圖書館"))))
    assert out[0]["type"] == "flex"


@pytest.mark.asyncio
async def test_bad_postbacks(deps):
    processor = make_processor(deps, ContactHandler(deps))
    assert (await processor.process_event(postback_event("contact:members$圖書館")))[0]["text"] == POSTBACK_INVALID_MESSAGE
    assert error_count(deps, "postback") == 1.0

    unknown = encode(make("weather", "today"))
    assert (await processor.process_event(postback_event(unknown)))[0]["text"] == POSTBACK_INVALID_MESSAGE

    oversized = "{" + "x" * deps.settings.max_postback_bytes + "}"
    assert (await processor.process_event(postback_event(oversized)))[0]["text"] == POSTBACK_TOO_LONG_MESSAGE

    assert await processor.process_event(postback_event("  ")) == []
    assert "關鍵字模式" in (await processor.process_event(postback_event("使用說明")))[0]["text"]
    print("[TEST] postback handling passed ✅")


@pytest.mark.asyncio
async def test_usage_reports_the_senders_own_quota(deps):
    processor = make_processor(deps, burst=6, llm_burst=3)
    processor.dispatcher.register(UsageHandler(deps, processor.user_limiter, processor.llm_limiter))

    def quota_rows(out):
        body = out[0]["contents"]["contents"][0]["body"]["contents"]
        return {row["contents"][0]["text"]: row["contents"][1]["text"] for row in body}

    first = quota_rows(await processor.process_event(text_event("額度")))
    # the query itself took one message token
    assert first["⚡ 訊息額度"].startswith("可用 5 / 6 次")
    assert first["🤖 AI 短期額度"].startswith("可用 3 / 3 次")

    second = quota_rows(await processor.process_event(text_event("quota")))
    assert second["⚡ 訊息額度"].startswith("可用 4 / 6 次")

    other = quota_rows(await processor.process_event(text_event("額度", source={"type": "user", "userId": "U2"})))
    assert other["⚡ 訊息額度"].startswith("可用 5 / 6 次")
