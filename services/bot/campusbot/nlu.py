"""
NLU adapter - turns free-form text into (module, intent, params).

Key points:
- Talks to OpenAI-compatible /chat/completions endpoints (plain HTTPX client)
- Forces a function call from a closed set of signatures; "direct_reply"
  carries greetings / clarifications back to the user as plain text
- Primary provider first, then the fallback provider on any NLU failure
- The same provider chain expands short "找課" queries for ranked search
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from common.config import Settings

from .errors import NLUError, NLUInvalidResponse, NLUUnavailable
from .metrics import Metrics

logger = logging.getLogger("nlu")

DIRECT_REPLY = "direct_reply"
HELP = "help"

# Longer queries are descriptive enough unless they carry an abbreviation
EXPANSION_MAX_LENGTH = 15
ABBREVIATION_RE = re.compile(
    r"\b(AWS|AI|ML|DL|API|SDK|SQL|DB|UI|UX|IoT|AR|VR|NLP|CV|LLM|GPT|RAG|ETL|CI|CD|K8S|GCP|AZURE|ESG)\b",
    re.IGNORECASE,
)

SYSTEM_PROMPT = (
    "你是國立臺北大學 LINE 聊天機器人的意圖分類助手。分析使用者的輸入並呼叫最合適的函式。\n"
    "- 使用者知道課名或教師姓名時用 course_search；只能描述學習需求或主題時用 course_smart。\n"
    "- 無法判斷時優先使用 course_search。\n"
    "- 學號為 8-9 位數字；課程編號如 1131U0001 或 U0001。\n"
    "- 問候、閒聊或需要澄清時呼叫 direct_reply，簡短友善地說明可查詢的內容。\n"
    "- 不回答與校務查詢無關的問題。"
)

EXPANSION_PROMPT = (
    "將以下課程搜尋需求擴展為適合關鍵字檢索的查詢字串：保留原詞，補上中英文同義詞、"
    "縮寫全名與相關主題，以空白分隔，只輸出查詢字串本身。\n\n需求：{query}"
)


def _function(name: str, description: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    params = params or {}
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": {k: {"type": "string", "description": v} for k, v in params.items()},
                "required": list(params),
            },
        },
    }


# function name -> (module, intent)
FUNCTION_MAP: Dict[str, Tuple[str, str]] = {
    "course_search": ("course", "search"),
    "course_smart": ("course", "smart"),
    "course_uid": ("course", "uid"),
    "course_historical": ("course", "historical"),
    "student_search": ("student", "search"),
    "student_id": ("student", "student_id"),
    "student_department": ("student", "department"),
    "student_year": ("student", "year"),
    "contact_search": ("contact", "search"),
    "contact_emergency": ("contact", "emergency"),
    "program_list": ("program", "list"),
    "program_search": ("program", "search"),
    "program_courses": ("program", "courses"),
    "usage_query": ("usage", "query"),
    DIRECT_REPLY: (DIRECT_REPLY, ""),
    HELP: (HELP, ""),
}

TOOLS: List[Dict[str, Any]] = [
    _function("course_search", "使用者已知課程名稱或教師姓名時，依課名或教師搜尋課程。",
              {"keyword": "課程名稱或教師姓名，例如「微積分」「王小明」"}),
    _function("course_smart", "使用者只能描述學習需求或主題時，以語意排序搜尋課程。",
              {"query": "學習需求描述；過短時擴展同義詞，例如「AI」→「人工智慧 機器學習 深度學習」"}),
    _function("course_uid", "依課程編號查詢，例如 1131U0001 或 U0001。",
              {"uid": "課程編號或課號"}),
    _function("course_historical", "查詢較早學年度的課程。",
              {"year": "民國學年度，例如 110", "keyword": "課程名稱或教師姓名"}),
    _function("student_search", "依姓名搜尋學生（僅有 94-113 學年度資料）。",
              {"name": "學生姓名或部分姓名"}),
    _function("student_id", "依學號查詢學生（8-9 位數字）。",
              {"student_id": "學號，例如 412345678"}),
    _function("student_department", "查詢科系代碼或依代碼查科系。",
              {"department": "科系名稱或代碼，例如「資工系」「85」"}),
    _function("student_year", "依入學學年度瀏覽各系學生名單。",
              {"year": "民國學年度，例如 112"}),
    _function("contact_search", "查詢校內單位或人員的電話、分機、信箱。",
              {"query": "單位或人員名稱，例如「資工系」「圖書館」"}),
    _function("contact_emergency", "取得校園緊急聯絡電話。"),
    _function("program_list", "列出所有學程。"),
    _function("program_search", "依名稱搜尋學程。", {"query": "學程關鍵字，例如「金融科技」"}),
    _function("program_courses", "查詢某學程在近兩學期開設的課程。", {"programName": "學程完整名稱"}),
    _function("usage_query", "使用者詢問自己剩餘的訊息額度或 AI 額度時，顯示額度狀態。"),
    _function(DIRECT_REPLY, "問候、閒聊、澄清或無法分類時，直接回覆文字。", {"message": "回覆給使用者的文字"}),
    _function(HELP, "使用者詢問如何使用機器人時顯示使用說明。"),
]


@dataclass(frozen=True)
class ParseResult:
    module: str
    intent: str = ""
    params: Dict[str, str] = field(default_factory=dict)

    @property
    def is_direct_reply(self) -> bool:
        return self.module == DIRECT_REPLY

    @property
    def is_help(self) -> bool:
        return self.module == HELP


@dataclass(frozen=True)
class Provider:
    name: str
    api_key: str
    base_url: str
    model: str


def providers_from_settings(s: Settings) -> List[Provider]:
    out: List[Provider] = []
    if s.llm_api_key:
        out.append(Provider("primary", s.llm_api_key, s.llm_base_url.rstrip("/"), s.llm_model))
    if s.llm_fallback_api_key and s.llm_fallback_base_url and s.llm_fallback_model:
        out.append(Provider(
            "fallback", s.llm_fallback_api_key, s.llm_fallback_base_url.rstrip("/"), s.llm_fallback_model,
        ))
    return out


def parse_tool_call(data: Dict[str, Any]) -> ParseResult:
    """
    Read the first choice of a chat completion. A tool call maps through
    FUNCTION_MAP; plain content (no call) is treated as a direct reply.
    """
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError):
        raise NLUInvalidResponse("completion has no choices") from None

    calls = message.get("tool_calls") or []
    if not calls:
        content = (message.get("content") or "").strip()
        if content:
            return ParseResult(DIRECT_REPLY, "", {"message": content})
        raise NLUInvalidResponse("completion has neither a tool call nor content")

    fn = calls[0].get("function") or {}
    name = fn.get("name", "")
    if name not in FUNCTION_MAP:
        raise NLUInvalidResponse(f"unknown function {name!r}")
    raw_args = fn.get("arguments") or "{}"
    try:
        args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
    except (ValueError, TypeError):
        raise NLUInvalidResponse(f"unparsable arguments for {name}") from None
    if not isinstance(args, dict):
        raise NLUInvalidResponse(f"arguments for {name} are not an object")

    module, intent = FUNCTION_MAP[name]
    params = {str(k): str(v).strip() for k, v in args.items() if v is not None}
    return ParseResult(module, intent, params)


class IntentParser:
    """
    Provider chain for intent parsing and query expansion. Disabled (every
    call raises NLUUnavailable) when no provider is configured.
    """

    def __init__(
        self,
        providers: Sequence[Provider],
        client: httpx.AsyncClient,
        metrics: Optional[Metrics] = None,
        timeout: float = 20.0,
    ) -> None:
        self.providers = list(providers)
        self._client = client
        self._metrics = metrics
        self._timeout = timeout

    def is_enabled(self) -> bool:
        return bool(self.providers)

    def _record(self, provider: Provider, result: str) -> None:
        if self._metrics is not None:
            self._metrics.record_nlu(provider.name, result)

    async def _complete(self, provider: Provider, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {provider.api_key}",
            "Content-Type": "application/json",
        }
        body = dict(payload, model=provider.model)
        try:
            response = await self._client.post(
                f"{provider.base_url}/chat/completions", headers=headers, json=body, timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise NLUUnavailable(f"{provider.name}: {e.__class__.__name__}: {e}") from e
        if response.status_code >= 400:
            logger.error("LLM provider %s error %s: %s", provider.name, response.status_code, response.text[:200])
            raise NLUUnavailable(f"{provider.name} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError:
            raise NLUInvalidResponse(f"{provider.name} returned a non-JSON body") from None

    async def _run(self, payload: Dict[str, Any], read) -> Any:
        if not self.providers:
            raise NLUUnavailable("no LLM provider configured")
        last: Optional[NLUError] = None
        for provider in self.providers:
            try:
                result = read(await self._complete(provider, payload))
            except NLUError as e:
                self._record(provider, e.kind)
                logger.warning("LLM provider %s failed: %s", provider.name, e)
                last = e
                continue
            self._record(provider, "ok")
            return result
        raise last

    async def parse(self, text: str) -> ParseResult:
        payload = {
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
            "tools": TOOLS,
            "tool_choice": "required",
            "temperature": 0.1,
            "max_tokens": 512,
        }
        result = await self._run(payload, parse_tool_call)
        logger.info("Parsed intent %s/%s", result.module, result.intent or "-")
        return result

    async def expand(self, query: str) -> str:
        """
        Add synonyms / full forms to a short query for ranked search.
        Long queries without abbreviations come back unchanged.
        """
        query = query.strip()
        if not query or (len(query) > EXPANSION_MAX_LENGTH and not ABBREVIATION_RE.search(query)):
            return query
        payload = {
            "messages": [{"role": "user", "content": EXPANSION_PROMPT.format(query=query)}],
            "temperature": 0.3,
            "max_tokens": 200,
        }

        def read(data: Dict[str, Any]) -> str:
            try:
                content = data["choices"][0]["message"].get("content") or ""
            except (KeyError, IndexError, TypeError, AttributeError):
                raise NLUInvalidResponse("expansion has no choices") from None
            content = " ".join(content.split())
            if not content:
                raise NLUInvalidResponse("expansion is empty")
            return content

        expanded = await self._run(payload, read)
        if query not in expanded:
            expanded = f"{query} {expanded}"
        logger.debug("Expanded %r -> %r", query, expanded)
        return expanded
