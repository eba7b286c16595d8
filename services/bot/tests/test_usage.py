import pytest

from campusbot import tracing
from campusbot.handlers import UsageHandler
from campusbot.postback import decode, make
from campusbot.ratelimit import KeyedLimiter, LimiterConfig

from conftest import FakeClock


@pytest.fixture
def limiters():
    clock = FakeClock()
    user = KeyedLimiter(LimiterConfig(name="user", burst=6, refill_rate=0.2), clock=clock)
    llm = KeyedLimiter(LimiterConfig(name="llm", burst=5, refill_rate=1 / 720, daily_limit=50), clock=clock)
    return user, llm


def rows(msg):
    body = msg["contents"]["contents"][0]["body"]["contents"]
    return {row["contents"][0]["text"]: row["contents"][1]["text"] for row in body}


@pytest.mark.asyncio
async def test_status_shows_every_layer_for_the_current_chat(deps, limiters):
    user, llm = limiters
    handler = UsageHandler(deps, user, llm)
    for _ in range(2):
        user.allow("U1")
    llm.allow("U1")

    tracing.inject("U1", "U1")
    out = await handler.handle_message("用量")
    assert len(out) == 1
    status = rows(out[0])
    assert status["⚡ 訊息額度"] == "可用 4 / 6 次，每 5 秒恢復 1 次"
    assert status["🤖 AI 短期額度"] == "可用 4 / 5 次，每小時恢復 5 次"
    assert status["📅 AI 每日額度"] == "可用 49 / 50 次，滾動 24 小時計算"
    assert out[0]["sender"]["name"] == "額度小幫手"
    print("[TEST] usage status passed ✅")


@pytest.mark.asyncio
async def test_keyword_claims_and_explanation(deps, limiters):
    handler = UsageHandler(deps, *limiters)
    assert handler.can_handle("額度")
    assert handler.can_handle("Quota")
    assert handler.can_handle("額度說明")
    assert not handler.can_handle("課程 額度")

    out = await handler.handle_message("額度說明")
    assert out[0]["altText"] == "額度說明"
    button = out[0]["contents"]["contents"][0]["footer"]["contents"][0]["action"]
    assert decode(button["data"]) == make("usage", "query")


@pytest.mark.asyncio
async def test_postback_and_intent_without_llm_limiter(deps, limiters):
    user, _ = limiters
    handler = UsageHandler(deps, user)
    tracing.inject("U9")

    out = await handler.handle_postback(make("usage", "query"))
    assert list(rows(out[0])) == ["⚡ 訊息額度"]
    assert rows(out[0])["⚡ 訊息額度"].startswith("可用 6 / 6 次")

    assert await handler.handle_postback(make("usage", "reset")) == []
    out = await handler.dispatch_intent("query", {})
    assert out[0]["altText"] == "使用額度狀態"
