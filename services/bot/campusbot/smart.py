# =============================================================================
# Purpose:
#   In-process ranked course search ("找課") over cached recent semesters.
#
# Responsibilities:
#   - Tokenise course text (CJK unigrams, other scripts as words).
#   - Keep one BM25 index per semester; rebuild after warm-up.
#   - Score a query per semester and merge with a per-semester relative
#     confidence so the best hit of every semester scores 1.0.
# =============================================================================

import asyncio
import logging
import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

from rank_bm25 import BM25Okapi

from .models import Course
from .store import Store

log = logging.getLogger("smart")

BM25_K1 = 1.5
BM25_B = 0.75

Semester = Tuple[int, int]


def _is_cjk(ch: str) -> bool:
    cp = ord(ch)
    return (
        0x4E00 <= cp <= 0x9FFF
        or 0x3400 <= cp <= 0x4DBF
        or 0x3040 <= cp <= 0x30FF   # kana
        or 0xAC00 <= cp <= 0xD7AF   # hangul
    )


def tokenize(text: str) -> List[str]:
    """
    Lowercase; CJK characters become single-character tokens, runs of other
    letters/digits become words, everything else separates.
    """
    tokens: List[str] = []
    word: List[str] = []
    for ch in text.lower():
        if _is_cjk(ch):
            if word:
                tokens.append("".join(word))
                word = []
            tokens.append(ch)
        elif unicodedata.category(ch)[0] in ("L", "N"):
            word.append(ch)
        elif word:
            tokens.append("".join(word))
            word = []
    if word:
        tokens.append("".join(word))
    return tokens


def course_document(course: Course) -> str:
    """Text indexed for one course."""
    parts = [course.title, " ".join(course.teachers), course.note]
    parts.extend(p.name for p in course.programs)
    return " ".join(p for p in parts if p)


def relative_confidence(score: float, best: float) -> float:
    """``score`` relative to the best score of its semester, clamped to [0, 1]."""
    if best > 0 and score > 0:
        return min(1.0, score / best)
    if best < 0 and score < 0:
        return max(0.0, min(1.0, best / score))
    return 0.0


@dataclass
class SmartHit:
    course: Course
    score: float
    confidence: float


class _SemesterIndex:
    def __init__(self, courses: Sequence[Course]) -> None:
        self.courses = list(courses)
        self.engine = BM25Okapi([tokenize(course_document(c)) or [""] for c in self.courses], k1=BM25_K1, b=BM25_B)

    def search(self, tokens: List[str], top_n: int) -> List[Tuple[Course, float]]:
        scores = self.engine.get_scores(tokens)
        ranked = sorted(zip(self.courses, (float(s) for s in scores)), key=lambda p: p[1], reverse=True)
        return [(c, s) for c, s in ranked[:top_n] if s > 0]


class SmartIndex:
    """
    BM25 (Okapi, k1=1.5, b=0.75) over the courses of the most recent
    semesters. Empty until ``rebuild`` has seen at least one course.
    """

    def __init__(self) -> None:
        self._indexes: Dict[Semester, _SemesterIndex] = {}
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self._indexes)

    def count(self) -> int:
        return sum(len(idx.courses) for idx in self._indexes.values())

    def build(self, courses: Iterable[Course]) -> int:
        by_semester: Dict[Semester, List[Course]] = {}
        for course in courses:
            by_semester.setdefault((course.year, course.term), []).append(course)
        self._indexes = {sem: _SemesterIndex(cs) for sem, cs in by_semester.items() if cs}
        total = self.count()
        log.info("Smart index built: %d course(s) in %d semester(s)", total, len(self._indexes))
        return total

    async def rebuild(self, store: Store, semesters: Sequence[Semester]) -> int:
        async with self._lock:
            courses: List[Course] = []
            for year, term in semesters:
                courses.extend(await store.courses_by_semester(year, term))
            return self.build(courses)

    def search(self, query: str, top_n: int = 10) -> List[SmartHit]:
        """
        Top ``top_n`` hits of every semester, merged by confidence (ties:
        newer semester first) and cut to ``top_n``.
        """
        tokens = tokenize(query)
        if not tokens or not self._indexes:
            return []
        hits: List[SmartHit] = []
        for idx in self._indexes.values():
            ranked = idx.search(tokens, top_n)
            if not ranked:
                continue
            best = ranked[0][1]
            hits.extend(SmartHit(c, s, relative_confidence(s, best)) for c, s in ranked)
        hits.sort(key=lambda h: (-h.confidence, -h.course.year, -h.course.term, -h.score))
        return hits[:top_n]
