# =============================================================================
# Purpose:
#   SQLAlchemy table definitions for the local cache.
#
# Every table carries a cached_at column (unix seconds) that drives TTL
# freshness; columns used by exact search are indexed.
# =============================================================================

from typing import List

from sqlalchemy import JSON, Float, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class StudentRow(Base):
    __tablename__ = "students"

    id: Mapped[str] = mapped_column(String(9), primary_key=True)
    name: Mapped[str] = mapped_column(String(64), index=True)
    year: Mapped[int] = mapped_column(Integer, index=True)
    department: Mapped[str] = mapped_column(String(64), index=True)
    cached_at: Mapped[float] = mapped_column(Float, index=True)


class ContactRow(Base):
    __tablename__ = "contacts"

    uid: Mapped[str] = mapped_column(String(255), primary_key=True)
    type: Mapped[str] = mapped_column(String(16), index=True)
    name: Mapped[str] = mapped_column(String(128), index=True)
    name_en: Mapped[str] = mapped_column(String(128), default="")
    title: Mapped[str] = mapped_column(String(128), default="", index=True)
    organization: Mapped[str] = mapped_column(String(128), default="", index=True)
    superior: Mapped[str] = mapped_column(String(128), default="")
    phone: Mapped[str] = mapped_column(String(32), default="")
    extension: Mapped[str] = mapped_column(String(32), default="")
    email: Mapped[str] = mapped_column(String(128), default="")
    location: Mapped[str] = mapped_column(String(255), default="")
    website: Mapped[str] = mapped_column(String(255), default="")
    cached_at: Mapped[float] = mapped_column(Float, index=True)


class _CourseColumns:
    """Shared shape of active and historical course tables."""

    uid: Mapped[str] = mapped_column(String(16), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, index=True)
    term: Mapped[int] = mapped_column(Integer)
    no: Mapped[str] = mapped_column(String(8), index=True)
    title: Mapped[str] = mapped_column(String(255), index=True)
    teachers: Mapped[List[str]] = mapped_column(JSON, default=list)
    # Plain-text copy of the teacher names for LIKE searches
    teachers_text: Mapped[str] = mapped_column(String(255), default="", index=True)
    teacher_urls: Mapped[List[str]] = mapped_column(JSON, default=list)
    times: Mapped[List[str]] = mapped_column(JSON, default=list)
    locations: Mapped[List[str]] = mapped_column(JSON, default=list)
    detail_url: Mapped[str] = mapped_column(Text, default="")
    note: Mapped[str] = mapped_column(Text, default="")
    programs: Mapped[List[List[str]]] = mapped_column(JSON, default=list)
    cached_at: Mapped[float] = mapped_column(Float, index=True)


class CourseRow(_CourseColumns, Base):
    __tablename__ = "courses"


class HistoricalCourseRow(_CourseColumns, Base):
    __tablename__ = "historical_courses"


class ProgramRow(Base):
    __tablename__ = "programs"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    category: Mapped[str] = mapped_column(String(64), default="")
    url: Mapped[str] = mapped_column(Text, default="")
    cached_at: Mapped[float] = mapped_column(Float)
