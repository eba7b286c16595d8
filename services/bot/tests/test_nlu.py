import json

import httpx
import pytest

from campusbot.errors import NLUInvalidResponse, NLUUnavailable
from campusbot.nlu import IntentParser, Provider, parse_tool_call, providers_from_settings
from common.config import Settings

PRIMARY = Provider("primary", "key-1", "https://primary.test/v1", "model-a")
FALLBACK = Provider("fallback", "key-2", "https://fallback.test/v1", "model-b")


def completion(name=None, arguments=None, content=None):
    message = {"role": "assistant", "content": content}
    if name is not None:
        message["tool_calls"] = [{
            "id": "call_1",
            "type": "function",
            "function": {"name": name, "arguments": json.dumps(arguments or {}, ensure_ascii=False)},
        }]
    return {"choices": [{"index": 0, "message": message}]}


def test_parse_tool_call_maps_functions_to_intents():
    result = parse_tool_call(completion("course_search", {"keyword": " 微積分 "}))
    assert (result.module, result.intent, result.params) == ("course", "search", {"keyword": "微積分"})

    result = parse_tool_call(completion("contact_emergency"))
    assert (result.module, result.intent) == ("contact", "emergency")

    help_result = parse_tool_call(completion("help"))
    assert help_result.is_help


def test_parse_tool_call_plain_content_is_a_direct_reply():
    result = parse_tool_call(completion(content="你好！我可以幫你查課程。"))
    assert result.is_direct_reply
    assert result.params == {"message": "你好！我可以幫你查課程。"}


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"choices": []},
        completion(content="   "),
        completion("launch_rockets", {}),
        {"choices": [{"message": {"tool_calls": [{"function": {"name": "course_search", "arguments": "{not json"}}]}}]},
        {"choices": [{"message": {"tool_calls": [{"function": {"name": "course_search", "arguments": "[1, 2]"}}]}}]},
    ],
)
def test_parse_tool_call_rejects_malformed_completions(data):
    with pytest.raises(NLUInvalidResponse):
        parse_tool_call(data)


def test_providers_from_settings():
    assert providers_from_settings(Settings()) == []
    s = Settings(
        llm_api_key="k", llm_base_url="https://a.test/v1/", llm_model="m",
        llm_fallback_api_key="k2", llm_fallback_base_url="https://b.test/v1", llm_fallback_model="m2",
    )
    providers = providers_from_settings(s)
    assert [p.name for p in providers] == ["primary", "fallback"]
    assert providers[0].base_url == "https://a.test/v1"
    # an incomplete fallback is ignored
    assert len(providers_from_settings(Settings(llm_api_key="k", llm_fallback_api_key="k2"))) == 1


@pytest.mark.asyncio
async def test_disabled_parser_raises_unavailable():
    async with httpx.AsyncClient() as client:
        parser = IntentParser([], client)
        assert not parser.is_enabled()
        with pytest.raises(NLUUnavailable):
            await parser.parse("微積分")


@pytest.mark.asyncio
async def test_parse_sends_tools_and_reads_the_call(metrics):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append((str(request.url), request.headers["Authorization"], body))
        return httpx.Response(200, json=completion("student_id", {"student_id": "412345678"}))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await IntentParser([PRIMARY], client, metrics).parse("412345678 是誰")

    assert (result.module, result.intent, result.params) == ("student", "student_id", {"student_id": "412345678"})
    url, auth, body = seen[0]
    assert url == "https://primary.test/v1/chat/completions"
    assert auth == "Bearer key-1"
    assert body["model"] == "model-a"
    assert body["tool_choice"] == "required"
    assert body["messages"][-1]["content"] == "412345678 是誰"
    assert metrics.registry.get_sample_value(
        "campusbot_nlu_requests_total", {"provider": "primary", "result": "ok"}
    ) == 1.0


@pytest.mark.asyncio
async def test_fallback_provider_after_primary_failure(metrics):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "primary.test":
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, json=completion("program_list"))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await IntentParser([PRIMARY, FALLBACK], client, metrics).parse("有哪些學程")

    assert (result.module, result.intent) == ("program", "list")
    assert metrics.registry.get_sample_value(
        "campusbot_nlu_requests_total", {"provider": "primary", "result": "nlu_unavailable"}
    ) == 1.0
    assert metrics.registry.get_sample_value(
        "campusbot_nlu_requests_total", {"provider": "fallback", "result": "ok"}
    ) == 1.0


@pytest.mark.asyncio
async def test_every_provider_failing_raises_the_last_error():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "primary.test":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, text="<html>not json</html>")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(NLUInvalidResponse):
            await IntentParser([PRIMARY, FALLBACK], client).parse("嗨")


@pytest.mark.asyncio
async def test_expand_short_queries_only():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        return httpx.Response(200, json=completion(content="人工智慧  機器學習\n深度學習"))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        parser = IntentParser([PRIMARY], client)
        # the original query is kept in front when the model drops it
        assert await parser.expand("AI") == "AI 人工智慧 機器學習 深度學習"
        assert "tools" not in calls[0]

        long_query = "我想找一門可以學到如何整理與分析大量資料的課程"
        assert await parser.expand(long_query) == long_query
        assert len(calls) == 1

        # long queries with an abbreviation are still expanded
        await parser.expand("想學 AWS 雲端服務的架構設計與部署實務課程")
        assert len(calls) == 2
