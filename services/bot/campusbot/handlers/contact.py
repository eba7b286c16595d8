"""
Campus directory: emergency numbers and contact search over the cached
directory, with a scrape of the public search page on a miss.
"""

import time
from typing import Dict, List, Mapping, Sequence, Tuple

from .. import messages
from ..models import Contact
from ..postback import Postback, make
from ..sites import contacts as contact_site
from ..store import CONTACT
from ..text import build_keyword_regex, extract_search_term, fold_ascii
from .base import Handler, Message
from .search import cap_cards, two_tier

EMERGENCY_PREFIX = "緊急"

CONTACT_KEYWORDS = (
    "聯繫", "聯絡", "聯繫方式", "聯絡方式", "連繫", "連絡",
    "電話", "分機", "email", "信箱",
    "touch", "contact", "connect",
)

# (label, number); numbers have no hyphens so they can be dialled / copied
EMERGENCY_SANXIA: Tuple[Tuple[str, str], ...] = (
    ("總機", "0286741111"),
    ("24H緊急行政電話", "0226731949"),
    ("24H急難救助（校安中心）", "0226711234"),
    ("大門哨所", "0226733920"),
    ("宿舍夜間緊急電話", "0286716784"),
)
EMERGENCY_TAIPEI: Tuple[Tuple[str, str], ...] = (
    ("總機", "0225024654"),
    ("24H急難救助", "0225023671"),
)
EMERGENCY_OTHER: Tuple[Tuple[str, str], ...] = (
    ("北大派出所", "0226730561"),
    ("恩主公醫院", "0226723456"),
)

# Abbreviations the directory search does not understand, full names first
ABBREVIATIONS: Dict[str, Tuple[str, ...]] = {
    "資工": ("資訊工程學系", "資訊工程", "資工系"),
    "電機": ("電機工程學系", "電機工程", "電機系"),
    "通訊": ("通訊工程學系", "通訊工程", "通訊系"),
    "企管": ("企業管理學系", "企業管理", "企管系"),
    "會計": ("會計學系", "會計系"),
    "統計": ("統計學系", "統計系"),
    "金融": ("金融與合作經營學系", "金融系"),
    "休運": ("休閒運動管理學系", "休運系"),
    "經濟": ("經濟學系", "經濟系"),
    "社工": ("社會工作學系", "社工系"),
    "社學": ("社會學系", "社學系"),
    "法律": ("法律學系", "法律系"),
    "公行": ("公共行政暨政策學系", "公共行政", "公行系"),
    "財政": ("財政學系", "財政系"),
    "不動產": ("不動產與城鄉環境學系", "不動"),
    "不動": ("不動產與城鄉環境學系",),
    "中文": ("中國文學系", "中文系"),
    "應外": ("應用外語學系", "應外系"),
    "歷史": ("歷史學系", "歷史系"),
    "圖書館": ("圖書館", "圖書"),
    "學務處": ("學務處", "學務"),
    "教務處": ("教務處", "教務"),
    "總務處": ("總務處", "總務"),
    "研發處": ("研發處", "研究發展"),
    "人事室": ("人事室", "人事"),
    "註冊組": ("註冊組", "註冊"),
}


def search_variants(term: str) -> List[str]:
    """
    Query strings to try against the directory, in order: the term itself,
    known expansions, then the term with / without a trailing "系".
    """
    base = term[:-1] if term.endswith("系") and term[:-1] in ABBREVIATIONS else term
    variants = [term]
    variants.extend(ABBREVIATIONS.get(base, ()))
    variants.append(term[:-1] if term.endswith("系") else term + "系")
    out: List[str] = []
    for v in variants:
        if v and v not in out:
            out.append(v)
    return out


def match_score(contact: Contact, term: str) -> int:
    """How many characters of ``term`` appear anywhere in the contact's searchable fields."""
    combined = set(fold_ascii(contact.name + contact.title + contact.organization + contact.superior))
    return sum(1 for ch in fold_ascii(term) if ch in combined)


def sort_contacts(found: Sequence[Contact], term: str = "") -> List[Contact]:
    """Organizations first (top-level units before sub-units), then people by relevance."""
    orgs = sorted((c for c in found if c.is_organization), key=lambda c: (c.superior != "", c.name))
    people = sorted(
        (c for c in found if not c.is_organization),
        key=lambda c: (-match_score(c, term), c.name, c.title, c.organization),
    )
    return orgs + people


class ContactHandler(Handler):
    name = "contact"
    sender_name = "聯繫小幫手"
    intents = {
        "search": ("query",),
        "emergency": (),
    }

    def __init__(self, deps) -> None:
        super().__init__(deps)
        self._keyword_re = build_keyword_regex(CONTACT_KEYWORDS)

    def can_handle(self, text: str) -> bool:
        text = text.strip()
        return text.startswith(EMERGENCY_PREFIX) or bool(self._keyword_re.match(text))

    async def handle_message(self, text: str) -> List[Message]:
        text = text.strip()
        if text.startswith(EMERGENCY_PREFIX):
            return self.emergency()
        m = self._keyword_re.match(text)
        if not m:
            return []
        term = extract_search_term(text, m.group(0))
        if not term:
            return self.reply_text(
                "📞 請輸入查詢內容\n\n例如：\n• 聯絡 資工系\n• 電話 圖書館\n• 分機 學務處\n\n"
                "💡 提示：輸入「緊急」可查看緊急聯絡電話",
                self._nav(),
            )
        return await self.search(term)

    async def intent_search(self, params: Mapping[str, str]) -> List[Message]:
        return await self.search(params["query"])

    async def intent_emergency(self, params: Mapping[str, str]) -> List[Message]:
        return self.emergency()

    async def handle_postback(self, pb: Postback) -> List[Message]:
        if pb.action == "members" and pb.get("org"):
            return await self.members(pb.get("org"))
        self.logger.info("Unknown contact postback action %s", pb.action)
        return []

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def emergency(self) -> List[Message]:
        def card(title: str, rows: Sequence[Tuple[str, str]]) -> dict:
            return messages.bubble(
                title,
                [(label, number) for label, number in rows],
                badge="🚨 緊急聯絡電話",
                buttons=[messages.uri_action(f"📞 {label}", f"tel:{number}") for label, number in rows[:4]],
            )

        bubbles = [
            card("三峽校區", EMERGENCY_SANXIA),
            card("臺北校區", EMERGENCY_TAIPEI),
            card("其他常用", EMERGENCY_OTHER),
        ]
        msg = messages.carousel("緊急聯絡電話", bubbles)
        msg["sender"] = self.sender()
        return [messages.with_quick_reply(msg, self._nav())]

    async def search(self, term: str) -> List[Message]:
        term = term.strip()
        started = time.monotonic()
        found: List[Contact] = await two_tier(
            self.store, CONTACT,
            ["name", "title"],
            ["name", "title", "organization", "superior"],
            term,
            key=lambda c: c.uid,
        )
        self.record_cache(bool(found))
        if not found:
            self.logger.info("Cache miss for contact search %r, scraping", term)
            found = await self._scrape(term)
        self.observe(started)

        if not found:
            return self.reply_text(
                f"🔍 查無「{term}」的聯絡資料\n\n💡 建議\n• 確認關鍵字拼寫是否正確\n"
                "• 嘗試使用單位全名或簡稱\n• 若查詢人名，可嘗試只輸入姓氏",
                self._nav(),
            )
        return self._render(sort_contacts(found, term), term)

    async def members(self, organization: str) -> List[Message]:
        people = [c for c in await self.store.contacts_by_organization(organization) if not c.is_organization]
        self.record_cache(bool(people))
        if not people:
            scraped = await contact_site.search_contacts(self.scraper, organization)
            if scraped:
                await self.store.save_batch(CONTACT, scraped)
            people = [
                c for c in scraped
                if not c.is_organization and organization in (c.organization, c.superior)
            ]
        if not people:
            return self.reply_text(f"🔍 查無「{organization}」的成員資料\n\n💡 該單位可能尚未建立成員資訊", self._nav())
        return self._render(sort_contacts(people), organization)

    async def _scrape(self, term: str) -> List[Contact]:
        for variant in search_variants(term):
            found = await contact_site.search_contacts(self.scraper, variant)
            if found:
                await self.store.save_batch(CONTACT, found)
                return found
        return []

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def _nav(self) -> List[dict]:
        return [
            messages.message_action("🚨 緊急電話", EMERGENCY_PREFIX),
            messages.message_action("📞 聯絡查詢", "聯絡"),
        ]

    def _card(self, c: Contact) -> dict:
        buttons = []
        if c.phone:
            buttons.append(messages.uri_action("📞 撥打電話", f"tel:{c.phone}"))
        if c.email:
            buttons.append(messages.uri_action("✉️ 寄送郵件", f"mailto:{c.email}"))
        if c.is_organization:
            buttons.append(messages.postback_action(
                "👥 查看成員", make(self.name, "members", org=c.name), f"查看「{c.name}」的成員",
            ))
            if c.website:
                buttons.append(messages.uri_action("🌐 網站", c.website))
            return messages.bubble(
                c.name,
                [("上級單位", c.superior), ("地點", c.location), ("網站", c.website)],
                badge="🏢 單位",
                buttons=buttons,
            )
        if not buttons:
            buttons.append(messages.uri_action("🔗 查看來源", contact_site.search_url(c.name)))
        return messages.bubble(
            c.name,
            [("職稱", c.title), ("單位", c.organization), ("分機", c.extension), ("信箱", c.email)],
            subtitle=c.name_en,
            badge="👤 個人",
            buttons=buttons,
        )

    def _render(self, found: List[Contact], term: str) -> List[Message]:
        kept, omitted = cap_cards(
            found, self.settings.max_contacts_per_search, self.settings.max_messages_per_reply,
        )
        note = None
        if omitted:
            note = messages.text(
                f"⚠️ 搜尋結果達到上限 {len(kept)} 筆，另有 {omitted} 筆未顯示\n\n建議使用更精確的關鍵字搜尋",
                sender=self.sender(),
            )
        out = messages.carousels(
            f"「{term}」的聯絡資料", [self._card(c) for c in kept],
            note=note, max_messages=self.settings.max_messages_per_reply,
        )
        out[0]["sender"] = self.sender()
        messages.with_quick_reply(out[-1], self._nav())
        return out
