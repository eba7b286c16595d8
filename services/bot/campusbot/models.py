# =============================================================================
# Purpose:
#   Domain records (plain dataclasses) and the LINE webhook wire format
#   (Pydantic v2 models).
#
# Responsibilities:
#   - Define Student / Contact / Course / Program as stored and rendered.
#   - Parse the inbound webhook envelope, keeping field names stable via
#     aliases that match the platform's camelCase JSON.
# =============================================================================

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

CONTACT_PERSON = "person"
CONTACT_ORGANIZATION = "organization"


# -----------------------------------------------------------------------------
# Domain records
# -----------------------------------------------------------------------------
@dataclass
class Student:
    """
    One student as listed by the LMS portfolio search.
    ``id`` is 8 or 9 decimal digits; ``year`` is the ROC admission year.
    """
    id: str
    name: str
    year: int
    department: str
    cached_at: float = 0.0


@dataclass
class Contact:
    """
    A campus directory entry: either an organization (office, department)
    or a person belonging to one.
    """
    uid: str
    type: str
    name: str
    name_en: str = ""
    title: str = ""
    organization: str = ""
    superior: str = ""
    phone: str = ""
    extension: str = ""
    email: str = ""
    location: str = ""
    website: str = ""
    cached_at: float = 0.0

    @property
    def is_organization(self) -> bool:
        return self.type == CONTACT_ORGANIZATION


@dataclass
class ProgramRequirement:
    """A degree program that lists a course, with the course type (必 / 選)."""
    name: str
    course_type: str


@dataclass
class Course:
    """
    A course offering. ``uid`` is year + term + no, e.g. "1131U0001".
    ``teacher_urls`` is either parallel to ``teachers`` or empty.
    """
    uid: str
    year: int
    term: int
    no: str
    title: str
    teachers: List[str] = field(default_factory=list)
    teacher_urls: List[str] = field(default_factory=list)
    times: List[str] = field(default_factory=list)
    locations: List[str] = field(default_factory=list)
    detail_url: str = ""
    note: str = ""
    programs: List[ProgramRequirement] = field(default_factory=list)
    cached_at: float = 0.0

    @property
    def semester(self) -> str:
        return f"{self.year}-{self.term}"

    @property
    def teacher_names(self) -> str:
        return "、".join(self.teachers)


@dataclass
class Program:
    """An academic (credit / micro) program from the LMS catalogue."""
    name: str
    category: str = ""
    url: str = ""
    cached_at: float = 0.0


@dataclass
class WarmupReport:
    """Per-module counts and collected errors from one warm-up run."""
    counts: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# -----------------------------------------------------------------------------
# LINE webhook envelope
# -----------------------------------------------------------------------------
class Source(BaseModel):
    """
    Where an event came from. ``chat_id`` is the id replies are addressed to:
    the user in a 1:1 chat, otherwise the group or room.
    """
    type: Literal["user", "group", "room"]
    user_id: Optional[str] = Field(None, alias="userId")
    group_id: Optional[str] = Field(None, alias="groupId")
    room_id: Optional[str] = Field(None, alias="roomId")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def chat_id(self) -> str:
        if self.type == "group":
            return self.group_id or ""
        if self.type == "room":
            return self.room_id or ""
        return self.user_id or ""

    @property
    def is_personal(self) -> bool:
        return self.type == "user"


class Mentionee(BaseModel):
    index: int
    length: int
    type: str = "user"
    user_id: Optional[str] = Field(None, alias="userId")
    is_self: bool = Field(False, alias="isSelf")

    model_config = {"populate_by_name": True, "extra": "ignore"}


class Mention(BaseModel):
    mentionees: List[Mentionee] = Field(default_factory=list)


class MessageContent(BaseModel):
    id: str = ""
    type: str
    text: Optional[str] = None
    quote_token: Optional[str] = Field(None, alias="quoteToken")
    mention: Optional[Mention] = None
    package_id: Optional[str] = Field(None, alias="packageId")
    sticker_id: Optional[str] = Field(None, alias="stickerId")

    model_config = {"populate_by_name": True, "extra": "ignore"}


class PostbackContent(BaseModel):
    data: str = ""
    params: Optional[Dict[str, str]] = None


class Event(BaseModel):
    type: str
    mode: str = "active"
    timestamp: int = 0
    reply_token: Optional[str] = Field(None, alias="replyToken")
    webhook_event_id: Optional[str] = Field(None, alias="webhookEventId")
    source: Optional[Source] = None
    message: Optional[MessageContent] = None
    postback: Optional[PostbackContent] = None

    model_config = {"populate_by_name": True, "extra": "ignore"}


class WebhookBody(BaseModel):
    destination: str = ""
    events: List[Event] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """
    Readiness summary used by /healthz.
    """
    status: Literal["ok", "starting", "down"]
    store: bool
    warmup_done: bool = Field(..., alias="warmupDone")

    model_config = {"populate_by_name": True}
