"""
Async SQLite store for scraped records.

Responsibilities:
- Upsert students / contacts / courses / historical courses / programs,
  one at a time or as an atomic batch.
- Answer the two search primitives over the fresh working set:
    * exact(): substring containment on the named fields (SQL LIKE)
    * fuzzy(): character-multiset containment on the concatenated fields
- Hide stale rows: a row is fresh iff now - cached_at < ttl(kind).
  Programs never expire. sweep() deletes stale rows in the background.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from functools import reduce
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, event, func, literal, or_, select, text as sql_text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ..models import Contact, Course, Program, ProgramRequirement, Student
from ..text import contains_all_runes
from .schema import Base, ContactRow, CourseRow, HistoricalCourseRow, ProgramRow, StudentRow

logger = logging.getLogger("store")

STUDENT = "student"
CONTACT = "contact"
COURSE = "course"
HISTORICAL_COURSE = "historical_course"
PROGRAM = "program"

# Stay far below SQLite's bound-parameter limit per INSERT statement
_BATCH_CHUNK = 200


# -----------------------------------------------------------------------------
# Record <-> row conversion
# -----------------------------------------------------------------------------
def _student_row(s: Student) -> Dict[str, Any]:
    return asdict(s)


def _student(row: StudentRow) -> Student:
    return Student(id=row.id, name=row.name, year=row.year, department=row.department, cached_at=row.cached_at)


def _contact_row(c: Contact) -> Dict[str, Any]:
    return asdict(c)


def _contact(row: ContactRow) -> Contact:
    return Contact(
        uid=row.uid, type=row.type, name=row.name, name_en=row.name_en, title=row.title,
        organization=row.organization, superior=row.superior, phone=row.phone,
        extension=row.extension, email=row.email, location=row.location,
        website=row.website, cached_at=row.cached_at,
    )


def _course_row(c: Course) -> Dict[str, Any]:
    data = asdict(c)
    data["programs"] = [[p.name, p.course_type] for p in c.programs]
    data["teachers_text"] = " ".join(c.teachers)
    return data


def _course(row) -> Course:
    return Course(
        uid=row.uid, year=row.year, term=row.term, no=row.no, title=row.title,
        teachers=list(row.teachers or []), teacher_urls=list(row.teacher_urls or []),
        times=list(row.times or []), locations=list(row.locations or []),
        detail_url=row.detail_url, note=row.note,
        programs=[ProgramRequirement(name=p[0], course_type=p[1]) for p in (row.programs or [])],
        cached_at=row.cached_at,
    )


def _program_row(p: Program) -> Dict[str, Any]:
    return asdict(p)


def _program(row: ProgramRow) -> Program:
    return Program(name=row.name, category=row.category, url=row.url, cached_at=row.cached_at)


@dataclass(frozen=True)
class _Kind:
    row: type
    key: str
    to_row: Callable[[Any], Dict[str, Any]]
    from_row: Callable[[Any], Any]
    # Logical search field -> column attribute name
    columns: Dict[str, str]
    # Ordering applied to query results
    order: Sequence[str]


_KINDS: Dict[str, _Kind] = {
    STUDENT: _Kind(
        StudentRow, "id", _student_row, _student,
        {"id": "id", "name": "name", "department": "department"},
        ("id",),
    ),
    CONTACT: _Kind(
        ContactRow, "uid", _contact_row, _contact,
        {"name": "name", "title": "title", "organization": "organization", "superior": "superior"},
        ("type", "uid"),
    ),
    COURSE: _Kind(
        CourseRow, "uid", _course_row, _course,
        {"title": "title", "teachers": "teachers_text", "no": "no"},
        ("-year", "-term", "no"),
    ),
    HISTORICAL_COURSE: _Kind(
        HistoricalCourseRow, "uid", _course_row, _course,
        {"title": "title", "teachers": "teachers_text", "no": "no"},
        ("-year", "-term", "no"),
    ),
    PROGRAM: _Kind(
        ProgramRow, "name", _program_row, _program,
        {"name": "name", "category": "category"},
        ("name",),
    ),
}


def _escape_like(needle: str) -> str:
    return needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False)


def _sqlite_pragmas(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class Store:
    """
    TTL'd cache over one SQLite file.

    Each public call runs one statement (or one transaction) so it observes a
    consistent snapshot. Writers are serialized by an asyncio lock; readers run
    freely under WAL.
    """

    def __init__(
        self,
        path: str,
        *,
        ttl: float,
        historical_ttl: float,
        clock: Callable[[], float] = time.time,
        echo: bool = False,
    ) -> None:
        self.path = path
        self._ttl = {STUDENT: ttl, CONTACT: ttl, COURSE: ttl, HISTORICAL_COURSE: historical_ttl, PROGRAM: 0.0}
        self._clock = clock
        self._engine = create_async_engine(
            f"sqlite+aiosqlite:///{path}",
            echo=echo,
            json_serializer=_json_dumps,
        )
        event.listen(self._engine.sync_engine, "connect", _sqlite_pragmas)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False, class_=AsyncSession)
        self._write_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def init(self) -> None:
        """Create the parent directory and all tables."""
        parent = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(parent, exist_ok=True)
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Store ready at %s", self.path)

    async def close(self) -> None:
        await self._engine.dispose()

    async def ping(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(sql_text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning("Store ping failed: %s", e)
            return False

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    def _kind(self, kind: str) -> _Kind:
        try:
            return _KINDS[kind]
        except KeyError:
            raise ValueError(f"unknown record kind: {kind}") from None

    def ttl(self, kind: str) -> float:
        return self._ttl[kind]

    def _fresh(self, kind: str):
        """WHERE clause selecting rows still inside their TTL (None = no expiry)."""
        ttl = self._ttl[kind]
        if ttl <= 0:
            return None
        return self._kind(kind).row.cached_at > self._clock() - ttl

    def _select(self, kind: str, *where):
        spec = self._kind(kind)
        stmt = select(spec.row)
        fresh = self._fresh(kind)
        if fresh is not None:
            stmt = stmt.where(fresh)
        for clause in where:
            stmt = stmt.where(clause)
        for name in spec.order:
            col = getattr(spec.row, name.lstrip("-"))
            stmt = stmt.order_by(col.desc() if name.startswith("-") else col)
        return stmt

    def _columns(self, kind: str, fields: Iterable[str]) -> List[Any]:
        spec = self._kind(kind)
        cols = []
        for f in fields:
            if f not in spec.columns:
                raise ValueError(f"{kind} has no searchable field {f!r}")
            cols.append(getattr(spec.row, spec.columns[f]))
        if not cols:
            raise ValueError("at least one field is required")
        return cols

    async def _fetch(self, kind: str, stmt) -> List[Any]:
        spec = self._kind(kind)
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
        return [spec.from_row(r) for r in rows]

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------
    async def get(self, kind: str, key: str) -> Optional[Any]:
        """Fresh record by primary key; a stale hit counts as a miss."""
        spec = self._kind(kind)
        records = await self._fetch(kind, self._select(kind, getattr(spec.row, spec.key) == key))
        return records[0] if records else None

    async def exact(self, kind: str, fields: Sequence[str], needle: str) -> List[Any]:
        """
        Records where any of ``fields`` contains ``needle`` as a substring.
        SQLite LIKE folds ASCII case only, matching the search semantics.
        """
        needle = needle.strip()
        if not needle:
            return []
        pattern = f"%{_escape_like(needle)}%"
        cols = self._columns(kind, fields)
        clause = or_(*[c.like(pattern, escape="\\") for c in cols])
        return await self._fetch(kind, self._select(kind, clause))

    async def fuzzy(self, kind: str, fields: Sequence[str], needle: str) -> List[Any]:
        """
        Records whose concatenated ``fields`` contain every character of
        ``needle`` at least as often as the needle does.

        SQL narrows the candidates to rows containing each distinct character;
        the multiset count check runs in Python.
        """
        chars = {ch for ch in needle if not ch.isspace()}
        if not chars:
            return []
        spec = self._kind(kind)
        cols = self._columns(kind, fields)
        joined = reduce(lambda a, b: a.op("||")(literal(" ")).op("||")(b), [func.coalesce(c, "") for c in cols])
        clauses = [joined.like(f"%{_escape_like(ch)}%", escape="\\") for ch in sorted(chars)]
        async with self._sessions() as session:
            rows = (await session.scalars(self._select(kind, *clauses))).all()
        out = []
        for row in rows:
            haystack = " ".join(str(getattr(row, spec.columns[f]) or "") for f in fields)
            if contains_all_runes(haystack, needle):
                out.append(spec.from_row(row))
        return out

    async def all(self, kind: str) -> List[Any]:
        return await self._fetch(kind, self._select(kind))

    async def count(self, kind: str) -> int:
        spec = self._kind(kind)
        stmt = select(func.count()).select_from(spec.row)
        fresh = self._fresh(kind)
        if fresh is not None:
            stmt = stmt.where(fresh)
        async with self._sessions() as session:
            return int(await session.scalar(stmt) or 0)

    async def students_by_year_department(self, year: int, department: str) -> List[Student]:
        return await self._fetch(
            STUDENT, self._select(STUDENT, StudentRow.year == year, StudentRow.department == department)
        )

    async def contacts_by_organization(self, organization: str) -> List[Contact]:
        """Members of ``organization`` and units whose superior it is."""
        clause = or_(ContactRow.organization == organization, ContactRow.superior == organization)
        return await self._fetch(CONTACT, self._select(CONTACT, clause))

    async def courses_by_semester(self, year: int, term: int, kind: str = COURSE) -> List[Course]:
        row = self._kind(kind).row
        return await self._fetch(kind, self._select(kind, row.year == year, row.term == term))

    async def has_courses(self, year: int, term: int) -> bool:
        stmt = select(CourseRow.uid).where(CourseRow.year == year, CourseRow.term == term).limit(1)
        fresh = self._fresh(COURSE)
        if fresh is not None:
            stmt = stmt.where(fresh)
        async with self._sessions() as session:
            return (await session.scalar(stmt)) is not None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------
    def _upsert(self, kind: str, rows: List[Dict[str, Any]]):
        spec = self._kind(kind)
        stmt = sqlite_insert(spec.row).values(rows)
        updates = {name: stmt.excluded[name] for name in rows[0] if name != spec.key}
        return stmt.on_conflict_do_update(index_elements=[spec.key], set_=updates)

    async def save(self, kind: str, record: Any) -> None:
        await self.save_batch(kind, [record])

    async def save_batch(self, kind: str, records: Sequence[Any]) -> int:
        """
        Upsert ``records`` in one transaction: either every row lands or none.
        Every row is stamped with the current time. Returns the row count.
        """
        if not records:
            return 0
        spec = self._kind(kind)
        now = self._clock()
        rows = []
        for record in records:
            record.cached_at = now
            rows.append(spec.to_row(record))
        async with self._write_lock:
            async with self._sessions() as session:
                async with session.begin():
                    for i in range(0, len(rows), _BATCH_CHUNK):
                        await session.execute(self._upsert(kind, rows[i:i + _BATCH_CHUNK]))
        logger.debug("Saved %d %s record(s)", len(rows), kind)
        return len(rows)

    async def sweep(self) -> int:
        """Delete stale rows of every expiring kind; returns rows removed."""
        removed = 0
        async with self._write_lock:
            async with self._sessions() as session:
                async with session.begin():
                    for kind, spec in _KINDS.items():
                        ttl = self._ttl[kind]
                        if ttl <= 0:
                            continue
                        result = await session.execute(
                            delete(spec.row).where(spec.row.cached_at <= self._clock() - ttl)
                        )
                        removed += result.rowcount or 0
        if removed:
            logger.info("Swept %d stale row(s)", removed)
        return removed

    async def purge(self, kind: Optional[str] = None) -> None:
        """Administrative delete of every row of ``kind`` (all kinds when None)."""
        kinds = [kind] if kind else list(_KINDS)
        async with self._write_lock:
            async with self._sessions() as session:
                async with session.begin():
                    for k in kinds:
                        await session.execute(delete(self._kind(k).row))
        logger.info("Purged %s", ", ".join(kinds))

    async def run_sweeper(self, interval: float, stop: asyncio.Event) -> None:
        """Sweep every ``interval`` seconds until ``stop`` is set."""
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                try:
                    await self.sweep()
                except Exception as e:
                    logger.error("Sweep failed: %s", e)
