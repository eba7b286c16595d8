"""
Student lookups: id -> name, name -> ids, department code tables and
year browsing (college group -> college -> department -> roster).

LMS 2.0 data is complete for admission years 94-112, sparse for 113 and
absent from 114 on; replies say so instead of pretending nothing exists.
"""

import time
from typing import Dict, List, Mapping, Optional, Tuple

from .. import messages
from ..models import Student
from ..postback import Postback, make
from ..sites import departments, students as student_site
from ..store import STUDENT
from ..text import build_keyword_regex, extract_search_term, is_numeric, contains_all_runes
from .base import Handler, Message, help_action, roc_year
from .program import LIST_KEYWORDS as PROGRAM_LIST_KEYWORDS
from .search import cap_lines, two_tier

NTPU_FOUNDED_YEAR = 89
LMS_LAUNCH_YEAR = 94
DATA_YEAR_END = 112
DATA_CUTOFF_YEAR = 113

STUDENTS_PER_MESSAGE = 100

ALL_CODES_TEXT = "所有系代碼"

STUDENT_KEYWORDS = ("學號", "學生", "姓名", "student", "id")
DEPARTMENT_KEYWORDS = (
    "系代碼", "系所代碼", "科系代碼", "系編號", "系所編號", "科系編號",
    "系所", "科系", "系名", "系所名", "科系名", "系所名稱", "科系名稱",
    "系", "所", "dep", "department", "depCode", "departmentCode",
)
YEAR_KEYWORDS = ("學年", "年份", "年度", "學年度", "入學年", "入學學年", "入學年度", "year")

# college group -> colleges -> undergraduate department codes
COLLEGE_GROUPS: Dict[str, Tuple[str, ...]] = {
    "文法商": ("人文學院", "法律學院", "商學院"),
    "公社電資": ("公共事務學院", "社會科學學院", "電機資訊學院"),
}
COLLEGES: Dict[str, Tuple[str, ...]] = {
    "人文學院": ("81", "82", "83"),
    "法律學院": ("712", "714", "716"),
    "商學院": ("79", "80", "77", "78", "84"),
    "公共事務學院": ("72", "76", "75"),
    "社會科學學院": ("73", "742", "744"),
    "電機資訊學院": ("87", "85", "86"),
}
LAW_CODES = frozenset({"712", "714", "716"})

LMS_DEPRECATED_MESSAGE = (
    "😢 數位學苑 2.0 已於 113 學年度起停用\n\n"
    "113 學年度起新生使用數位學苑 3.0，僅少數學生有建立數位學苑 2.0 帳號。\n\n"
    "📅 完整資料範圍：\n"
    "• 學年度/學號查詢：94-112 學年度\n"
    "• 姓名查詢：101-112 學年度\n\n"
    "⚠️ 113 學年度資料不完整"
)
NOT_FOUND_HINT = (
    "🔍 查無「{}」的學號資料\n\n"
    "📊 姓名查詢範圍\n"
    "• 學士班/碩博士班：101-112 學年度（完整）\n"
    "• 113 學年度資料不完整（僅極少數學生）\n"
    "• 114 學年度起無資料（數位學苑 2.0 停用）\n\n"
    "💡 建議：\n"
    "• 確認姓名拼寫是否正確\n"
    "• 使用「學年」功能按年度查詢"
)
YEAR_113_EMPTY = (
    "🔍 查無 113 學年度「{}」的學生資料\n\n"
    "⚠️ 113 學年度資料不完整\n"
    "僅極少數手動建立數位學苑 2.0 帳號的學生有資料。\n\n"
    "📅 完整資料範圍：94-112 學年度"
)
YEAR_TOO_OLD = "📚 這個年份的資料不完整喔\n\n數位學苑資料從民國 94 年起較完整，\n請輸入 94-112 學年度的年份。"
YEAR_BEFORE_FOUNDING = "🏫 學校都還沒蓋好啦\n\n臺北大學於民國 89 年成立。"
YEAR_FUTURE = "🔮 哎呀～你是未來人嗎？"


def parse_year(raw: str) -> Optional[int]:
    """2-4 digit year; Gregorian years (>= 1911) are converted to ROC."""
    raw = raw.strip()
    if not is_numeric(raw) or not 2 <= len(raw) <= 4:
        return None
    year = int(raw)
    return year - 1911 if year >= 1911 else year


def department_label(code: str) -> str:
    """Department name as stored on student records ("資工系", law groups share "法律系")."""
    if code in LAW_CODES:
        return "法律系"
    name = departments.DEPARTMENT_NAMES.get(code, "")
    return name + "系" if name else ""


def _unit(code: str) -> str:
    return "組" if code in LAW_CODES else "系"


def _group_code(student_id: str) -> str:
    return student_id[4:7] if len(student_id) == 9 else student_id[3:6]


class StudentHandler(Handler):
    name = "student"
    sender_name = "學號小幫手"
    intents = {
        "search": ("name",),
        "student_id": ("student_id",),
        "department": ("department",),
        "year": ("year",),
    }

    def __init__(self, deps) -> None:
        super().__init__(deps)
        self._student_re = build_keyword_regex(STUDENT_KEYWORDS)
        self._department_re = build_keyword_regex(DEPARTMENT_KEYWORDS)
        self._year_re = build_keyword_regex(YEAR_KEYWORDS)
        # "所有學程" starts with "所" but belongs to the program list
        self._program_list_re = build_keyword_regex(PROGRAM_LIST_KEYWORDS)

    # ------------------------------------------------------------------
    # Keyword path
    # ------------------------------------------------------------------
    def can_handle(self, text: str) -> bool:
        text = text.strip()
        if text == ALL_CODES_TEXT or departments.is_student_id(text):
            return True
        if self._program_list_re.match(text):
            return False
        return any(r.match(text) for r in (self._department_re, self._year_re, self._student_re))

    async def handle_message(self, text: str) -> List[Message]:
        text = text.strip()
        if text == ALL_CODES_TEXT:
            return self.all_department_codes()
        if departments.is_student_id(text):
            return await self.query_student_id(text)

        # department before year before student: "系" must not lose to "學生"
        m = self._department_re.match(text)
        if m:
            term = extract_search_term(text, m.group(0))
            if not term:
                return self.reply_text(
                    "🔍 查詢系所資訊\n\n請輸入系名或系代碼：\n例如：「系 資工」或「系代碼 85」\n\n"
                    "💡 提示：輸入「所有系代碼」查看完整對照表",
                    [messages.message_action("📋 所有系代碼", ALL_CODES_TEXT), help_action()],
                )
            return self.query_department(term)

        m = self._year_re.match(text)
        if m:
            term = extract_search_term(text, m.group(0))
            if not term:
                return self.reply_text(
                    "📅 按學年度查詢學生\n\n請輸入學年度進行查詢\n例如：學年 112、學年 110\n\n"
                    "📋 查詢流程：\n1️⃣ 選擇學院群\n2️⃣ 選擇學院\n3️⃣ 選擇系所\n4️⃣ 查看該系所所有學生\n\n"
                    "⚠️ 僅提供 94-112 學年度完整資料（113 年極不完整、114 年起無資料）",
                    [messages.message_action(f"📅 查詢 {y} 學年度", f"學年 {y}")
                     for y in (DATA_YEAR_END, DATA_YEAR_END - 1, DATA_YEAR_END - 2)],
                )
            return await self.query_year(term)

        m = self._student_re.match(text)
        if m:
            term = extract_search_term(text, m.group(0))
            if not term:
                return self.reply_text(
                    "🎓 請在關鍵字後輸入查詢內容\n\n例如：\n• 學號 小明\n• 學號 412345678\n\n"
                    "💡 提示：也可直接輸入 8-9 位學號",
                    [messages.message_action("📅 學年查詢", "學年"), help_action()],
                )
            if departments.is_student_id(term):
                return await self.query_student_id(term)
            return await self.search_name(term)
        return []

    # ------------------------------------------------------------------
    # NLU path
    # ------------------------------------------------------------------
    async def intent_search(self, params: Mapping[str, str]) -> List[Message]:
        return await self.search_name(params["name"])

    async def intent_student_id(self, params: Mapping[str, str]) -> List[Message]:
        return await self.query_student_id(params["student_id"])

    async def intent_department(self, params: Mapping[str, str]) -> List[Message]:
        return self.query_department(params["department"])

    async def intent_year(self, params: Mapping[str, str]) -> List[Message]:
        return await self.query_year(params["year"])

    # ------------------------------------------------------------------
    # Postbacks: year -> group -> college -> department
    # ------------------------------------------------------------------
    async def handle_postback(self, pb: Postback) -> List[Message]:
        try:
            year = int(pb.get("y"))
        except ValueError:
            self.logger.info("Student postback without a year: %s", pb.action)
            return []
        if pb.action == "year":
            return self.choose_group(year)
        if pb.action == "group":
            return self.choose_college(year, pb.get("g"))
        if pb.action == "college":
            return self.choose_department(year, pb.get("c"))
        if pb.action == "dept":
            return await self.list_department(year, pb.get("d"))
        self.logger.info("Unknown student postback action %s", pb.action)
        return []

    def choose_group(self, year: int) -> List[Message]:
        actions = [
            messages.postback_action(f"🏛️ {group}", make(self.name, "group", y=year, g=group), group)
            for group in COLLEGE_GROUPS
        ]
        return self.reply_text(f"📅 {year} 學年度\n\n請選擇學院群：", actions)

    def choose_college(self, year: int, group: str) -> List[Message]:
        colleges = COLLEGE_GROUPS.get(group)
        if not colleges:
            return []
        actions = [
            messages.postback_action(college, make(self.name, "college", y=year, c=college), college)
            for college in colleges
        ]
        return self.reply_text(f"📅 {year} 學年度・{group}\n\n請選擇學院：", actions)

    def choose_department(self, year: int, college: str) -> List[Message]:
        codes = COLLEGES.get(college)
        if not codes:
            return []
        actions = []
        for code in codes:
            label = departments.DEPARTMENT_NAMES.get(code, code) + _unit(code)
            actions.append(messages.postback_action(label, make(self.name, "dept", y=year, d=code), label))
        return self.reply_text(f"📅 {year} 學年度・{college}\n\n請選擇系所：", actions)

    async def list_department(self, year: int, code: str) -> List[Message]:
        label = department_label(code)
        if not label:
            return []
        display = departments.DEPARTMENT_NAMES.get(code, "") + _unit(code)
        started = time.monotonic()

        found = await self.store.students_by_year_department(year, label)
        if code in LAW_CODES:
            # the three law groups share a department label; keep this group's ids
            found = [s for s in found if _group_code(s.id) == code]
        self.record_cache(bool(found))
        if not found:
            found = await student_site.fetch_students(self.scraper, year, code)
            if found:
                await self.store.save_batch(STUDENT, found)
        self.observe(started)

        if not found:
            if year == DATA_CUTOFF_YEAR:
                return self.reply_text(YEAR_113_EMPTY.format(display))
            return self.reply_text(f"🤔 {year} 學年度{display}好像沒有人耶")

        kept, omitted = cap_lines(
            sorted(found, key=lambda s: s.id), 0, STUDENTS_PER_MESSAGE, self.settings.max_messages_per_reply,
        )
        lines = [f"{s.id}  {s.name}" for s in kept]
        header = f"🎓 {year} 學年度{display}（共 {len(found)} 人）\n"
        note = f"⚠️ 僅顯示前 {len(kept)} 人，另有 {omitted} 人未顯示。" if omitted else ""
        return self._student_pages(lines, header, note=note)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def query_student_id(self, student_id: str) -> List[Message]:
        student_id = student_id.strip()
        if not departments.is_student_id(student_id):
            return self.reply_text("❌ 學號格式不正確\n\n學號為 8 或 9 位數字，例如：412345678")
        year = departments.extract_year(student_id)
        if year > DATA_CUTOFF_YEAR:
            return self._lms_deprecated()

        student = await self.store.get(STUDENT, student_id)
        self.record_cache(student is not None)
        if student is None:
            student = await student_site.fetch_student(self.scraper, student_id)
            if student is not None:
                await self.store.save(STUDENT, student)

        if student is None:
            if year == DATA_CUTOFF_YEAR:
                return self.reply_text(YEAR_113_EMPTY.format(student_id))
            return self.reply_text(f"🔍 查無此學號：{student_id}\n\n請確認學號是否正確")
        return [self._student_card(student)]

    async def search_name(self, name: str) -> List[Message]:
        name = name.strip()
        found: List[Student] = await two_tier(self.store, STUDENT, ["name"], ["name"], name, key=lambda s: s.id)
        self.record_cache(bool(found))
        if not found:
            return self.reply_text(NOT_FOUND_HINT.format(name), [messages.message_action("📅 學年查詢", "學年")])

        found.sort(key=lambda s: (-s.year, s.id))
        kept, omitted = cap_lines(
            found, self.settings.max_students_per_search, STUDENTS_PER_MESSAGE,
            self.settings.max_messages_per_reply, has_note=True,
        )
        lines = [f"{s.id}  {s.name}  {s.department}" for s in kept]
        header = f"🔍「{name}」共找到 {len(found)} 位學生\n"
        notes = ["⚠️ 學號資料僅供參考，113 學年度起資料不完整。"]
        if omitted:
            notes.append(f"⚠️ 搜尋結果超過 {len(kept)} 筆，另有 {omitted} 筆未顯示，請輸入更完整的姓名。")
        return self._student_pages(lines, header, note="\n".join(notes))

    async def query_year(self, raw: str) -> List[Message]:
        year = parse_year(raw)
        if year is None:
            return self.reply_text("❌ 學年度格式不正確\n\n請輸入 2-4 位數字，例如：學年 112")
        current = roc_year(self.now())
        if year > current:
            return self.reply_text(YEAR_FUTURE)
        if year > DATA_CUTOFF_YEAR:
            return self._lms_deprecated()
        if year < NTPU_FOUNDED_YEAR:
            return self.reply_text(YEAR_BEFORE_FOUNDING)
        if year < LMS_LAUNCH_YEAR:
            return self.reply_text(YEAR_TOO_OLD)
        if year == DATA_CUTOFF_YEAR:
            return self.reply_text(
                "⚠️ 113 學年度資料極不完整\n\n僅極少數手動建立數位學苑 2.0 帳號的學生有資料。",
                [
                    messages.postback_action("繼續查詢 ➡️", make(self.name, "year", y=year), "繼續查詢 113 學年度"),
                    messages.message_action(f"📅 改查 {DATA_YEAR_END} 學年度", f"學年 {DATA_YEAR_END}"),
                ],
            )
        return self.choose_group(year)

    def query_department(self, query: str) -> List[Message]:
        query = query.strip()
        if is_numeric(query):
            return self._department_by_code(query)
        return self._department_by_name(query)

    def _department_by_code(self, code: str) -> List[Message]:
        matches = []
        if code in departments.DEPARTMENT_NAMES:
            matches.append((departments.DEPARTMENT_NAMES[code] + _unit(code), "大學部"))
        if code in departments.MASTER_DEPARTMENT_NAMES:
            matches.append((departments.MASTER_DEPARTMENT_NAMES[code], "碩士班"))
        if code in departments.PHD_DEPARTMENT_NAMES:
            matches.append((departments.PHD_DEPARTMENT_NAMES[code], "博士班"))

        if not matches:
            return self.reply_text(
                "🔍 查無該系代碼\n\n請輸入正確的系代碼\n例如：85（資工系）",
                [messages.message_action("📋 所有系代碼", ALL_CODES_TEXT), help_action()],
            )
        if len(matches) == 1:
            name, degree = matches[0]
            return self.reply_text(f"🎓 系代碼 {code} 是：{name}（{degree}）")
        body = f"🔍 系代碼 {code} 對應多個系所：\n" + "".join(f"\n• {n}（{d}）" for n, d in matches)
        return self.reply_text(body)

    def _department_by_name(self, query: str) -> List[Message]:
        needle = query.removesuffix("系").removesuffix("班")
        tables = (
            ("大學部", departments.FULL_DEPARTMENT_CODES),
            ("碩士班", departments.MASTER_DEPARTMENT_CODES),
            ("博士班", departments.PHD_DEPARTMENT_CODES),
        )
        grouped: Dict[str, List[Tuple[str, str]]] = {}
        for degree, table in tables:
            for full_name, code in table.items():
                if contains_all_runes(full_name, needle):
                    grouped.setdefault(degree, []).append((full_name, code))

        total = sum(len(v) for v in grouped.values())
        if total == 0:
            return self.reply_text(
                "🔍 查無該系所\n\n請輸入正確的系名\n例如：資工、法律、企管",
                [messages.message_action("📋 所有系代碼", ALL_CODES_TEXT), help_action()],
            )
        if total == 1:
            degree, hits = next(iter(grouped.items()))
            name, code = hits[0]
            return self.reply_text(f"🔍「{needle}」→ {name}（{degree}）\n\n系代碼是：{code}")

        lines = [f"🔍「{needle}」找到 {total} 個符合的系所："]
        for degree, _ in tables:
            if degree not in grouped:
                continue
            lines.append(f"\n🎓 {degree}")
            lines.extend(f"  • {name} → {code}" for name, code in grouped[degree])
        return self.reply_text("\n".join(lines))

    def all_department_codes(self) -> List[Message]:
        lines = ["📋 大學部系代碼一覽"]
        icons = {"人文學院": "📖", "法律學院": "⚖️", "商學院": "💼",
                 "公共事務學院": "🏛️", "社會科學學院": "👥", "電機資訊學院": "💻"}
        for college, codes in COLLEGES.items():
            lines.append(f"\n{icons[college]} {college}")
            for code in codes:
                lines.append(f"  {departments.DEPARTMENT_NAMES[code]}{_unit(code)} → {code}")
        lines.append("\n🎓 查詢碩博士班\n輸入「系名 XXX」（如：系名 法律）可搜尋所有學制")
        return self.reply_text("\n".join(lines), [
            messages.message_action("📅 學年查詢", "學年"),
            messages.message_action("🎓 學號查詢", "學號"),
            help_action(),
        ])

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def _student_card(self, student: Student) -> Message:
        card = messages.bubble(
            student.name,
            [
                ("學號", student.id),
                ("系所", student.department),
                ("入學", f"{student.year} 學年度" if student.year else ""),
            ],
            badge="🎓 學生資訊",
            buttons=[messages.clipboard_action("📋 複製學號", student.id)],
        )
        return messages.carousel(f"{student.name} {student.id}", [card])

    def _student_pages(self, lines: List[str], header: str, note: str = "") -> List[Message]:
        """
        One text message per STUDENTS_PER_MESSAGE lines followed by ``note``.
        Callers size ``lines`` with ``cap_lines`` so the pages fit the reply.
        """
        out: List[Message] = []
        for start in range(0, len(lines), STUDENTS_PER_MESSAGE):
            body = "\n".join(lines[start:start + STUDENTS_PER_MESSAGE])
            if start == 0:
                body = header + "\n" + body
            out.append(messages.text(body, sender=self.sender()))
        if note:
            out.append(messages.text(note, sender=self.sender()))
        return out

    def _lms_deprecated(self) -> List[Message]:
        return [
            messages.text(LMS_DEPRECATED_MESSAGE, sender=self.sender()),
            messages.with_quick_reply(
                messages.image(self.deps.stickers.random_url()),
                [messages.message_action(f"📅 查詢 {DATA_YEAR_END} 學年度", f"學年 {DATA_YEAR_END}"), help_action()],
            ),
        ]
