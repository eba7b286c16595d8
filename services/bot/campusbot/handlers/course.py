"""
Course search.

Message forms, in priority order:
- full UID ("1131U0001") anywhere in the text
- bare course number ("U0001"), tried against the two most recent semesters
- "課程 <year> <keyword>": historical search (older than the recent window)
- "找課 <description>": ranked (BM25) search with optional LLM expansion
- "<keyword> <title or teacher>": unified title + teacher search

The unified search reads the store first (exact + fuzzy), then scrapes the
recent semesters by title/teacher, then scans whole semesters, and finally
falls back to the ranked index.
"""

import asyncio
import re
import time
from typing import List, Mapping, Optional, Sequence

from .. import messages
from ..errors import NLUError, ScraperError
from ..models import Course
from ..postback import Postback, make
from ..sites import courses as course_site
from ..smart import SmartHit, SmartIndex
from ..store import COURSE, HISTORICAL_COURSE
from ..text import build_keyword_regex, contains_all_runes, dedupe, extract_search_term, truncate
from .. import tracing
from .base import Handler, Message, help_action, roc_year
from .search import cap_cards, two_tier
from .semester import SemesterDetector

COURSE_SYSTEM_LAUNCH_YEAR = 90
SMART_TOP_N = 10
SMART_FALLBACK_TOP_N = 5

COURSE_KEYWORDS = (
    "課", "課程", "科目", "課名", "課程名", "課程名稱", "科目名", "科目名稱",
    "師", "老師", "教師", "教授", "老師名", "教師名", "教授名",
    "老師名稱", "教師名稱", "教授名稱", "授課教師", "授課老師", "授課教授",
    "class", "course", "teacher", "professor", "prof", "dr", "doctor",
)
SMART_KEYWORDS = ("找課", "找課程", "搜課")

# a UID may sit inside a sentence but not inside a longer alphanumeric token
UID_RE = re.compile(r"(?<![0-9A-Za-z])\d{3,4}[UMNP]\d{4}(?![0-9A-Za-z])", re.IGNORECASE)
COURSE_NO_RE = re.compile(r"^[UMNP]\d{4}$", re.IGNORECASE)
HISTORICAL_RE = re.compile(r"^(課程?|course|class)\s+(\d{2,3})\s+(.+)$", re.IGNORECASE)

SEARCH_HELP = (
    "📚 課程查詢方式\n\n"
    "🔍 精確搜尋\n• 課程 微積分\n• 課程 王小明\n• 課程 線代 王\n\n"
    "📅 歷史課程\n• 課程 110 微積分\n\n"
    "💡 直接輸入課號（如 U0001）\n   或完整課號（如 1131U0001）"
)
SMART_HELP = "\n\n🔮 智慧搜尋\n• 找課 想學資料分析\n• 找課 Python 入門"
SMART_DISABLED = "⚠️ 智慧搜尋目前未啟用\n\n請使用精確搜尋\n• 課程 微積分\n• 課程 王小明"


def sort_courses(courses: Sequence[Course]) -> List[Course]:
    """Newest semester first, then course number."""
    return sorted(courses, key=lambda c: (-c.year, -c.term, c.no))


def matches_course(course: Course, term: str) -> bool:
    """Fuzzy match on the title or any single teacher."""
    if contains_all_runes(course.title, term):
        return True
    return any(contains_all_runes(t, term) for t in course.teachers)


def relevance_badge(rank: int) -> str:
    """Rank-based label: the top three are "most relevant"."""
    return "🎯 最相關" if rank <= 3 else "✨ 相關"


class CourseHandler(Handler):
    name = "course"
    sender_name = "課程小幫手"
    intents = {
        "search": ("keyword",),
        "uid": ("uid",),
        "historical": ("year", "keyword"),
        "smart": ("query",),
    }

    def __init__(
        self,
        deps,
        detector: SemesterDetector,
        smart: Optional[SmartIndex] = None,
        expander=None,
        llm_limiter=None,
    ) -> None:
        super().__init__(deps)
        self.detector = detector
        self.smart = smart
        self.expander = expander
        self.llm_limiter = llm_limiter
        self._keyword_re = build_keyword_regex(COURSE_KEYWORDS)
        self._smart_re = build_keyword_regex(SMART_KEYWORDS)

    @property
    def smart_enabled(self) -> bool:
        return self.smart is not None and self.smart.enabled

    # ------------------------------------------------------------------
    # Keyword path
    # ------------------------------------------------------------------
    def can_handle(self, text: str) -> bool:
        text = text.strip()
        return bool(
            UID_RE.search(text)
            or COURSE_NO_RE.match(text)
            or self._smart_re.match(text)
            or self._keyword_re.match(text)
        )

    async def handle_message(self, text: str) -> List[Message]:
        text = text.strip()
        m = UID_RE.search(text)
        if m:
            return await self.query_uid(m.group(0))
        if COURSE_NO_RE.match(text):
            return await self.query_course_no(text)

        m = HISTORICAL_RE.match(text)
        if m:
            return await self.search_historical(int(m.group(2)), m.group(3).strip())

        m = self._smart_re.match(text)
        if m:
            term = extract_search_term(text, m.group(0))
            if not term:
                if not self.smart_enabled:
                    return self.reply_text(SMART_DISABLED)
                return self.reply_text(
                    "🔮 智慧搜尋說明\n\n請描述您想找的課程內容：\n• 找課 想學資料分析\n"
                    "• 找課 Python 機器學習\n\n🔍 若知道課名，建議用「課程 名稱」"
                )
            return await self.smart_search(term)

        m = self._keyword_re.match(text)
        if m:
            term = extract_search_term(text, m.group(0))
            if not term:
                body = SEARCH_HELP + (SMART_HELP if self.smart_enabled else "")
                return self.reply_text(body, [help_action()])
            return await self.search(term)
        return []

    # ------------------------------------------------------------------
    # NLU path
    # ------------------------------------------------------------------
    async def intent_search(self, params: Mapping[str, str]) -> List[Message]:
        return await self.search(params["keyword"])

    async def intent_uid(self, params: Mapping[str, str]) -> List[Message]:
        value = params["uid"].upper()
        if COURSE_NO_RE.match(value):
            return await self.query_course_no(value)
        return await self.query_uid(value)

    async def intent_historical(self, params: Mapping[str, str]) -> List[Message]:
        try:
            year = int(params["year"])
        except ValueError:
            return self.reply_text(f"❌ 無效的學年度：{params['year']}")
        return await self.search_historical(year, params["keyword"])

    async def intent_smart(self, params: Mapping[str, str]) -> List[Message]:
        return await self.smart_search(params["query"])

    # ------------------------------------------------------------------
    # Postbacks
    # ------------------------------------------------------------------
    async def handle_postback(self, pb: Postback) -> List[Message]:
        if pb.action == "teacher" and pb.get("name"):
            return await self.search(pb.get("name"))
        if pb.action == "uid" and pb.get("uid"):
            return await self.query_uid(pb.get("uid"))
        self.logger.info("Unknown course postback action %s", pb.action)
        return []

    # ------------------------------------------------------------------
    # Single course lookups
    # ------------------------------------------------------------------
    async def _lookup(self, uid: str) -> Optional[Course]:
        course = await self.store.get(COURSE, uid)
        if course is None:
            course = await self.store.get(HISTORICAL_COURSE, uid)
        return course

    async def query_uid(self, uid: str) -> List[Message]:
        uid = uid.upper()
        course = await self._lookup(uid)
        self.record_cache(course is not None)
        if course is None:
            course = await course_site.fetch_course(self.scraper, uid)
            if course is not None:
                await self.store.save(COURSE, course)
        if course is None:
            return self.reply_text(
                f"🔍 查無課程編號 {uid}\n\n請確認\n• 課程編號拼寫是否正確\n• 該課程是否在近兩學年度開設",
                [messages.message_action("📚 課程查詢", "課程"), help_action()],
            )
        return self._render([course], uid)

    async def query_course_no(self, no: str) -> List[Message]:
        no = no.upper()
        semesters = await self.detector.recent(2)
        uids = [course_site.make_uid(year, term, no) for year, term in semesters]
        for uid in uids:
            course = await self.store.get(COURSE, uid)
            if course is not None:
                self.record_cache(True)
                return self._render([course], no)
        self.record_cache(False)

        errors: List[ScraperError] = []
        for uid in uids:
            try:
                course = await course_site.fetch_course(self.scraper, uid)
            except ScraperError as e:
                self.logger.debug("Course %s lookup failed: %s", uid, e)
                errors.append(e)
                continue
            if course is not None:
                await self.store.save(COURSE, course)
                return self._render([course], no)
        if errors and len(errors) == len(uids):
            raise errors[-1]
        return self.reply_text(
            f"🔍 查無課程編號 {no}\n\n請確認\n• 課程編號拼寫是否正確（如 U0001）\n"
            "• 該課程是否在近兩學年度開設\n\n💡 或使用「課程 課名」查詢",
            [messages.message_action("📚 課程查詢", "課程"), help_action()],
        )

    # ------------------------------------------------------------------
    # Unified title + teacher search
    # ------------------------------------------------------------------
    async def search(self, term: str) -> List[Message]:
        term = term.strip()
        started = time.monotonic()
        found: List[Course] = await two_tier(
            self.store, COURSE, ["title", "teachers"], ["title", "teachers"], term, key=lambda c: c.uid,
        )
        self.record_cache(bool(found))
        if not found:
            self.logger.info("Cache miss for course search %r, scraping recent semesters", term)
            found = await self._scrape(term)
        self.observe(started)
        if found:
            return self._render(sort_courses(found), term)

        if self.smart_enabled:
            hits = self.smart.search(term, SMART_FALLBACK_TOP_N)
            if hits:
                return self._render_smart(hits, term)

        body = (
            f"🔍 查無「{term}」的相關課程\n\n💡 建議嘗試\n• 縮短關鍵字（如「線性」→「線」）\n"
            "• 只輸入教師姓氏\n• 換個描述方式"
        )
        if self.smart_enabled:
            body += f"\n\n🔮 或用智慧搜尋\n「找課 {term}」"
        return self.reply_text(body, [help_action()])

    async def _scrape(self, term: str) -> List[Course]:
        """
        Title and teacher queries for the two most recent semesters; when they
        find nothing, scan those semesters whole and filter locally. Fails only
        when every request failed.
        """
        semesters = await self.detector.recent(2)
        found: List[Course] = []
        attempts = 0
        errors: List[ScraperError] = []

        async def attempt(coro):
            nonlocal attempts
            attempts += 1
            try:
                return await coro
            except ScraperError as e:
                errors.append(e)
                return []

        batches = await asyncio.gather(*(
            attempt(fn(self.scraper, year, term_no, term))
            for year, term_no in semesters
            for fn in (course_site.search_by_title, course_site.search_by_teacher)
        ))
        for batch in batches:
            found.extend(batch)
        found = dedupe(found, key=_uid)

        if found:
            await self.store.save_batch(COURSE, found)
        else:
            for year, term_no in semesters:
                semester = await attempt(course_site.fetch_semester(self.scraper, year, term_no))
                if semester:
                    await self.store.save_batch(COURSE, dedupe(semester, key=_uid))
                found.extend(c for c in semester if matches_course(c, term))

        if not found and errors and len(errors) == attempts:
            raise errors[-1]
        return dedupe(found, key=_uid)

    # ------------------------------------------------------------------
    # Historical search
    # ------------------------------------------------------------------
    async def search_historical(self, year: int, keyword: str) -> List[Message]:
        current = roc_year(self.now())
        if year < COURSE_SYSTEM_LAUNCH_YEAR or year > current:
            return self.reply_text(
                f"❌ 無效的學年度：{year}\n\n請輸入 {COURSE_SYSTEM_LAUNCH_YEAR}-{current} 之間的學年度",
            )
        if year >= current - 1:
            return await self.search(keyword)

        found = [
            c for c in await two_tier(
                self.store, HISTORICAL_COURSE, ["title", "teachers"], ["title", "teachers"], keyword,
                key=lambda c: c.uid,
            )
            if c.year == year
        ]
        self.record_cache(bool(found))
        if not found:
            found = await course_site.search_by_title(self.scraper, year, 0, keyword)
            if not found:
                found = await course_site.search_by_teacher(self.scraper, year, 0, keyword)
            found = dedupe(found, key=_uid)
            if found:
                await self.store.save_batch(HISTORICAL_COURSE, found)
        if not found:
            return self.reply_text(
                f"🔍 查無 {year} 學年度「{keyword}」的相關課程\n\n💡 請確認課名或教師姓名是否正確",
                [help_action()],
            )
        return self._render(sort_courses(found), f"{year} {keyword}")

    # ------------------------------------------------------------------
    # Smart search
    # ------------------------------------------------------------------
    async def _expand(self, query: str, gated: bool) -> str:
        if self.expander is None:
            return query
        chat_id = tracing.current().chat_id
        if gated and self.llm_limiter is not None and chat_id and not self.llm_limiter.allow(chat_id):
            self.logger.debug("LLM quota exhausted, searching without expansion")
            return query
        try:
            expanded = await self.expander.expand(query)
        except NLUError as e:
            self.logger.debug("Query expansion failed, using the original query: %s", e)
            return query
        return expanded or query

    async def _smart_hits(self, query: str, expand: bool = True, top_n: int = SMART_TOP_N) -> List[SmartHit]:
        if expand:
            query = await self._expand(query, gated=True)
        return self.smart.search(query, top_n)

    async def smart_search(self, query: str) -> List[Message]:
        if not self.smart_enabled:
            return self.reply_text(SMART_DISABLED)
        hits = await tracing.run_detached(self._smart_hits, query, timeout=self.settings.smart_search_timeout)
        if not hits:
            return self.reply_text("🔍 找不到相關課程\n\n嘗試不同的描述方式\n或使用精確搜尋\n• 課程 名稱")
        return self._render_smart(hits, query)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def _card(self, course: Course, badge: str = "📚 課程資訊") -> dict:
        buttons = []
        if course.detail_url:
            buttons.append(messages.uri_action("📖 課程大綱", course.detail_url))
        if course.teachers:
            teacher = course.teachers[0]
            buttons.append(messages.postback_action(
                "👨‍🏫 授課課程", make(self.name, "teacher", name=teacher), f"{teacher} 的授課課程",
            ))
        if course.programs:
            buttons.append(messages.postback_action(
                "🎓 相關學程", make("program", "course", uid=course.uid), f"{course.title} 的相關學程",
            ))
        if course.teacher_urls:
            buttons.append(messages.uri_action("🗓️ 教師課表", course.teacher_urls[0]))
        return messages.bubble(
            truncate(course.title, 60),
            [
                ("課號", course.uid),
                ("學期", f"{course.year} 學年度第 {course.term} 學期"),
                ("教師", course.teacher_names),
                ("時間", "、".join(course.times)),
                ("地點", "、".join(course.locations)),
                ("備註", course.note),
            ],
            badge=badge,
            buttons=buttons,
        )

    def _render(self, found: List[Course], term: str) -> List[Message]:
        kept, omitted = cap_cards(found, self.settings.max_courses_per_search, self.settings.max_messages_per_reply)
        note = None
        if omitted:
            note = messages.text(
                f"⚠️ 搜尋結果超過 {len(kept)} 門課程，僅顯示前 {len(kept)} 門，另有 {omitted} 門未顯示。\n\n"
                "💡 請使用更精確的關鍵字",
                sender=self.sender(),
            )
        out = messages.carousels(
            f"「{term}」的課程", [self._card(c) for c in kept],
            note=note, max_messages=self.settings.max_messages_per_reply,
        )
        out[0]["sender"] = self.sender()
        messages.with_quick_reply(out[-1], [messages.message_action("📚 課程查詢", "課程"), help_action()])
        return out

    def _render_smart(self, hits: List[SmartHit], query: str) -> List[Message]:
        bubbles = [self._card(h.course, relevance_badge(rank)) for rank, h in enumerate(hits, start=1)]
        out = messages.carousels(f"「{query}」的智慧搜尋結果", bubbles, max_messages=self.settings.max_messages_per_reply)
        out[0]["sender"] = self.sender()
        messages.with_quick_reply(out[-1], [messages.message_action("🔮 智慧搜尋", "找課"), help_action()])
        return out


def _uid(course: Course) -> str:
    return course.uid
