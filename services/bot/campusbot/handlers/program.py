"""
Degree programs (學分學程 / 微學程): catalogue listing, two-tier name
search, the courses of a program in the recent semesters, and the programs
a course counts towards.
"""

import time
from collections import Counter
from typing import Dict, List, Mapping, Optional, Sequence

from .. import messages
from ..models import Course, Program
from ..postback import Postback, make
from ..sites import programs as program_site
from ..store import COURSE, HISTORICAL_COURSE, PROGRAM
from ..text import build_keyword_regex, extract_search_term
from .base import Deps, Handler, Message
from .search import cap, cap_cards, two_tier
from .semester import SemesterDetector

LIST_KEYWORDS = ("學程列表", "所有學程", "program list", "programs")
SEARCH_KEYWORDS = ("學程", "program")

MAX_PROGRAMS_PER_SEARCH = 100
# Up to this many search hits are shown as cards, more as a text list
MAX_PROGRAM_CARDS = 10
PROGRAM_CATALOGUE_URL = "https://lms.ntpu.edu.tw/board.php?courseID=28286&f=doclist"

SEARCH_HELP = (
    "🎓 學程查詢說明\n\n"
    "• 學程列表：查看所有學程\n"
    "• 學程 關鍵字：搜尋學程\n\n"
    "例如：\n• 學程 資訊\n• 學程 管理\n• 學程 智慧財產"
)


class ProgramHandler(Handler):
    name = "program"
    sender_name = "學程小幫手"
    intents = {
        "list": (),
        "search": ("query",),
        "courses": ("programName",),
    }

    def __init__(self, deps: Deps, detector: SemesterDetector) -> None:
        super().__init__(deps)
        self.detector = detector
        self._list_re = build_keyword_regex(LIST_KEYWORDS)
        self._search_re = build_keyword_regex(SEARCH_KEYWORDS)

    def can_handle(self, text: str) -> bool:
        text = text.strip()
        return bool(self._list_re.match(text) or self._search_re.match(text))

    async def handle_message(self, text: str) -> List[Message]:
        text = text.strip()
        if self._list_re.match(text):
            return await self.list_programs()
        m = self._search_re.match(text)
        if not m:
            return []
        term = extract_search_term(text, m.group(0))
        if not term:
            return self.reply_text(SEARCH_HELP, self._nav())
        return await self.search(term)

    async def intent_list(self, params: Mapping[str, str]) -> List[Message]:
        return await self.list_programs()

    async def intent_search(self, params: Mapping[str, str]) -> List[Message]:
        return await self.search(params["query"])

    async def intent_courses(self, params: Mapping[str, str]) -> List[Message]:
        return await self.program_courses(params["programName"])

    async def handle_postback(self, pb: Postback) -> List[Message]:
        if pb.action == "courses" and pb.get("name"):
            return await self.program_courses(pb.get("name"))
        if pb.action == "course" and pb.get("uid"):
            return await self.course_programs(pb.get("uid"))
        self.logger.info("Unknown program postback action %s", pb.action)
        return []

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------
    async def _catalogue(self) -> List[Program]:
        """All programs; the catalogue is crawled once when the store has none."""
        found = await self.store.all(PROGRAM)
        if found:
            return found
        self.logger.info("Program catalogue empty, crawling")
        found = await program_site.fetch_programs(self.scraper)
        if found:
            await self.store.save_batch(PROGRAM, found)
        return found

    async def _recent_courses(self) -> List[Course]:
        out: List[Course] = []
        for year, term in await self.detector.recent(2):
            out.extend(await self.store.courses_by_semester(year, term))
        return out

    async def _course_counts(self) -> Dict[str, Counter]:
        """Program name -> Counter of course types over the recent semesters."""
        counts: Dict[str, Counter] = {}
        for course in await self._recent_courses():
            for req in course.programs:
                counts.setdefault(req.name, Counter())[req.course_type] += 1
        return counts

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def list_programs(self) -> List[Message]:
        programs = await self._catalogue()
        self.record_cache(bool(programs))
        if not programs:
            return self.reply_text("📭 目前沒有學程資料\n\n請稍後再試，系統會定期更新學程資訊。", self._nav())
        counts = await self._course_counts()
        return self._text_list(
            programs, counts,
            f"🎓 學程列表 (共 {len(programs)} 個)",
            "💡 輸入「學程 關鍵字」搜尋特定學程",
        )

    async def search(self, term: str) -> List[Message]:
        term = term.strip()
        started = time.monotonic()
        await self._catalogue()
        found: List[Program] = await two_tier(
            self.store, PROGRAM, ["name"], ["name", "category"], term, key=lambda p: p.name,
        )
        self.record_cache(bool(found))
        self.observe(started)
        if not found:
            return self.reply_text(
                f"🔍 查無「{term}」相關學程\n\n💡 建議\n• 使用「學程列表」查看所有學程\n• 嘗試其他關鍵字",
                self._nav(),
            )
        counts = await self._course_counts()
        if len(found) <= MAX_PROGRAM_CARDS:
            bubbles = [self._program_card(p, counts.get(p.name)) for p in found]
            out = [messages.carousel(f"「{term}」的學程", bubbles)]
            out[0]["sender"] = self.sender()
            messages.with_quick_reply(out[-1], self._nav())
            return out
        return self._text_list(
            found, counts,
            f"🔍 搜尋結果 (共 {len(found)} 個)",
            "💡 搜尋結果過多？請嘗試加入更多關鍵字以減少搜尋結果\n例如：「學程 金融 科技」",
        )

    async def program_courses(self, program_name: str) -> List[Message]:
        """
        Courses of ``program_name`` in the two most recent semesters, required
        courses first. Only the exact name matches; near names are not guessed.
        """
        program_name = program_name.strip()
        listed = []
        for course in await self._recent_courses():
            for req in course.programs:
                if req.name == program_name:
                    listed.append((req.course_type, course))
                    break
        self.record_cache(bool(listed))
        if not listed:
            return self.reply_text(
                f"📭 「{program_name}」在近 2 學期沒有課程資料\n\n💡 可能原因：\n"
                "• 該學程可能在本學期未開設相關課程\n"
                "• 學程名稱可能有誤，請嘗試「學程列表」查看正確名稱",
                self._nav(),
            )
        # 必 before 選, then newest semester first
        listed.sort(key=lambda p: (p[0] != "必", -p[1].year, -p[1].term, p[1].no))
        required = sum(1 for kind, _ in listed if kind == "必")
        kept, omitted = cap_cards(
            listed, self.settings.max_courses_per_search, self.settings.max_messages_per_reply,
        )
        if omitted:
            return self._courses_text(program_name, listed, required)

        note = messages.text(
            f"🎓 {program_name}\n必修 {required} 門・選修 {len(listed) - required} 門（近 2 學期）",
            sender=self.sender(),
        )
        bubbles = [self._course_card(course, kind) for kind, course in kept]
        out = messages.carousels(
            f"{program_name} 的課程", bubbles, note=note, max_messages=self.settings.max_messages_per_reply,
        )
        out[0]["sender"] = self.sender()
        messages.with_quick_reply(out[-1], self._nav())
        return out

    async def course_programs(self, uid: str) -> List[Message]:
        """The programs a course counts towards, as cards."""
        course: Optional[Course] = await self.store.get(COURSE, uid) or await self.store.get(HISTORICAL_COURSE, uid)
        if course is None or not course.programs:
            title = course.title if course else uid
            card = messages.bubble(
                "查無相關學程",
                [("課程", title)],
                badge="🎓 相關學程",
                buttons=[messages.uri_action("🔗 學程資訊", PROGRAM_CATALOGUE_URL)],
            )
            msg = messages.carousel("查無相關學程", [card])
            msg["sender"] = self.sender()
            return [messages.with_quick_reply(msg, self._nav())]

        by_name = {p.name: p for p in await self._catalogue()}
        counts = await self._course_counts()
        bubbles = [
            self._program_card(by_name.get(req.name) or Program(name=req.name), counts.get(req.name), req.course_type)
            for req in course.programs
        ]
        kept, _ = cap(bubbles, self.settings.max_messages_per_reply * messages.MAX_CAROUSEL_BUBBLES)
        out = messages.carousels("相關學程", kept, max_messages=self.settings.max_messages_per_reply)
        out[0]["sender"] = self.sender()
        messages.with_quick_reply(out[-1], self._nav())
        return out

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def _nav(self) -> List[dict]:
        return [
            messages.message_action("🎓 學程列表", "學程列表"),
            messages.message_action("🔍 搜尋學程", "學程"),
        ]

    def _program_card(self, p: Program, counts: Optional[Counter], course_type: str = "") -> dict:
        summary = ""
        if counts:
            summary = f"必修 {counts.get('必', 0)} 門・選修 {sum(counts.values()) - counts.get('必', 0)} 門"
        buttons = [messages.postback_action("📚 查看課程", make(self.name, "courses", name=p.name), f"查看「{p.name}」的課程")]
        if p.url:
            buttons.append(messages.uri_action("🔗 詳細資訊", p.url))
        return messages.bubble(
            p.name,
            [("類別", p.category), ("本課程", course_type), ("近 2 學期", summary)],
            badge="🎓 學程",
            buttons=buttons,
        )

    def _course_card(self, course: Course, course_type: str) -> dict:
        buttons = []
        if course.detail_url:
            buttons.append(messages.uri_action("📄 課程大綱", course.detail_url))
        return messages.bubble(
            course.title,
            [
                ("類型", "必修" if course_type == "必" else "選修"),
                ("學期", course.semester),
                ("教師", course.teacher_names),
                ("時間", "、".join(course.times)),
            ],
            subtitle=course.no,
            badge="📘 必修" if course_type == "必" else "📗 選修",
            buttons=buttons,
        )

    def _text_list(self, programs: Sequence[Program], counts: Dict[str, Counter], header: str, footer: str) -> List[Message]:
        kept, omitted = cap(programs, MAX_PROGRAMS_PER_SEARCH)
        lines = []
        for p in kept:
            n = sum(counts[p.name].values()) if p.name in counts else 0
            suffix = f"（{n} 門課）" if n else ""
            lines.append(f"• {p.name}{suffix}")
        if omitted:
            lines.append(f"…另有 {omitted} 個學程未顯示")
        lines.append("")
        lines.append(footer)
        chunks = messages.text_chunks(lines, header=header)[: self.settings.max_messages_per_reply]
        out = [messages.text(chunk, sender=self.sender()) for chunk in chunks]
        messages.with_quick_reply(out[-1], self._nav())
        return out

    def _courses_text(self, program_name: str, listed: Sequence, required: int) -> List[Message]:
        lines = []
        for kind, course in listed:
            mark = "必" if kind == "必" else "選"
            lines.append(f"[{mark}] {course.semester} {course.no} {course.title}（{course.teacher_names}）")
        header = f"🎓 {program_name}\n必修 {required} 門・選修 {len(listed) - required} 門（近 2 學期）\n"
        chunks = messages.text_chunks(lines, header=header)[: self.settings.max_messages_per_reply]
        out = [messages.text(chunk, sender=self.sender()) for chunk in chunks]
        messages.with_quick_reply(out[-1], self._nav())
        return out
