"""Exact and near-duplicate detection for generated questions.

Two filters run at generation time, in order:

1. exact fingerprint: canonical text plus sorted tags, checked against the
   repository index and against earlier items of the same batch;
2. semantic: within one batch, candidates sharing a (non-generic) correct
   answer are compared by keyword overlap and question-pattern family.

A looser word-difference heuristic is kept for auditing stored questions; it
is never applied to fresh batches.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from engines.base import ContentRepository
from engines.config import DedupThresholds
from schemas import CandidateItem

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_TOKEN_SPLIT = re.compile(r"[^\w']+")
_QUESTION_WORDS = ("what", "which", "who", "where", "when", "why", "how")


def canonicalize(text: str) -> str:
    lowered = _NON_WORD.sub("", str(text or "").lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def fingerprint(text: str, tags: Sequence[str] = ()) -> str:
    """Deterministic digest of canonical ``text`` and the sorted, lowercased ``tags``."""

    tag_part = "|".join(sorted({str(tag).strip().lower() for tag in tags if str(tag).strip()}))
    material = f"{canonicalize(text)}|{tag_part}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass
class DuplicatePair:
    kept: str
    dropped: str
    reason: str
    shared_keywords: List[str] = field(default_factory=list)


@dataclass
class DedupReport:
    total: int = 0
    exact: List[str] = field(default_factory=list)
    semantic: List[DuplicatePair] = field(default_factory=list)

    @property
    def duplicates(self) -> int:
        return len(self.exact) + len(self.semantic)

    @property
    def survivors(self) -> int:
        return self.total - self.duplicates


@dataclass
class AuditFinding:
    first: Mapping[str, Any]
    second: Mapping[str, Any]
    reason: str
    word_difference: int


class DedupEngine:
    def __init__(self, thresholds: DedupThresholds | None = None):
        self.thresholds = thresholds or DedupThresholds()

    # -- text features -----------------------------------------------------

    def keywords(self, text: str) -> Set[str]:
        tokens = _TOKEN_SPLIT.split(str(text or "").lower())
        return {
            token.strip("'")
            for token in tokens
            if len(token.strip("'")) >= self.thresholds.min_keyword_length
            and token not in self.thresholds.stopwords
        }

    def pattern_family(self, text: str) -> Optional[str]:
        lowered = str(text or "").lower()
        for family, phrases in self.thresholds.pattern_families:
            if any(phrase in lowered for phrase in phrases):
                return family
        return None

    def answer_key(self, answer: Optional[str]) -> Optional[str]:
        """Grouping key for a correct answer, ``None`` for blank or generic answers."""

        key = canonicalize(answer or "")
        if not key or key in self.thresholds.generic_answers:
            return None
        return key

    # -- pairwise rules ----------------------------------------------------

    def duplicate_reason(self, first: str, second: str) -> Optional[Tuple[str, List[str]]]:
        kw_first, kw_second = self.keywords(first), self.keywords(second)
        shared = sorted(kw_first & kw_second)
        cfg = self.thresholds
        if kw_first and kw_second:
            needed = min(cfg.keyword_overlap_cap, min(len(kw_first), len(kw_second)) * cfg.keyword_overlap_ratio)
            if shared and len(shared) >= needed:
                return "keyword_overlap", shared
        family = self.pattern_family(first)
        if family and family == self.pattern_family(second) and len(shared) >= cfg.pattern_min_shared:
            return f"pattern:{family}", shared
        return None

    def is_semantic_duplicate(self, first: str, second: str) -> bool:
        return self.duplicate_reason(first, second) is not None

    def word_difference(self, first: str, second: str) -> int:
        words_first = set(canonicalize(first).split())
        words_second = set(canonicalize(second).split())
        return len(words_first ^ words_second)

    def is_likely_duplicate(self, first: str, second: str) -> bool:
        return self.word_difference(first, second) <= self.thresholds.audit_max_word_difference

    def question_word(self, text: str) -> Optional[str]:
        words = canonicalize(text).split()
        for word in words:
            if word in _QUESTION_WORDS:
                return word
        return None

    def similar_intent(self, first: str, second: str) -> bool:
        word = self.question_word(first)
        if word is None or word != self.question_word(second):
            return False
        kw_first, kw_second = self.keywords(first), self.keywords(second)
        union = kw_first | kw_second
        if not union:
            return False
        return len(kw_first & kw_second) / len(union) > self.thresholds.intent_jaccard

    # -- generation-time filters -----------------------------------------

    def semantic_filter(
        self, candidates: Sequence[CandidateItem]
    ) -> Tuple[List[CandidateItem], List[DuplicatePair]]:
        survivors: List[CandidateItem] = []
        kept_by_answer: Dict[str, List[CandidateItem]] = {}
        pairs: List[DuplicatePair] = []
        for item in candidates:
            key = self.answer_key(item.correct_answer)
            if key is None:
                survivors.append(item)
                continue
            group = kept_by_answer.setdefault(key, [])
            match = None
            for kept in group:
                reason = self.duplicate_reason(kept.text, item.text)
                if reason is not None:
                    match = (kept, reason)
                    break
            if match is None:
                group.append(item)
                survivors.append(item)
                continue
            kept, (reason, shared) = match
            item.duplicate = True
            pairs.append(DuplicatePair(kept=kept.text, dropped=item.text, reason=reason, shared_keywords=shared))
        return survivors, pairs

    async def filter(
        self, candidates: Sequence[CandidateItem], repository: ContentRepository
    ) -> Tuple[List[CandidateItem], DedupReport]:
        """Drop exact and near duplicates; later items lose to earlier ones.

        Repository lookups may raise ``PersistenceError``; the caller decides how
        to report that.
        """

        report = DedupReport(total=len(candidates))
        seen: Set[str] = set()
        unique: List[CandidateItem] = []
        for item in candidates:
            digest = fingerprint(item.text, item.tags)
            if digest in seen or await repository.exists_fingerprint(digest):
                item.duplicate = True
                report.exact.append(item.text)
                continue
            seen.add(digest)
            unique.append(item)

        survivors, pairs = self.semantic_filter(unique)
        report.semantic.extend(pairs)
        if report.duplicates:
            logger.info(
                "Dropped %d of %d generated questions (%d exact, %d near-duplicate)",
                report.duplicates,
                report.total,
                len(report.exact),
                len(report.semantic),
            )
        return survivors, report

    # -- corpus auditing -----------------------------------------------------

    def find_likely_duplicates(self, questions: Sequence[Mapping[str, Any]]) -> List[AuditFinding]:
        """Pairs of stored questions that look like duplicates.

        Each question mapping needs a ``question`` text and may carry a
        ``correct_answer``. Pairs are reported by word difference, by a shared
        non-generic answer combined with a keyword match, or by the same
        question word with overlapping keywords whatever the answers are.
        """

        findings: List[AuditFinding] = []
        for i, first in enumerate(questions):
            text_first = str(first.get("question") or "")
            answer_first = self.answer_key(first.get("correct_answer"))
            for second in questions[i + 1 :]:
                text_second = str(second.get("question") or "")
                difference = self.word_difference(text_first, text_second)
                if difference <= self.thresholds.audit_max_word_difference:
                    findings.append(AuditFinding(first, second, "word_difference", difference))
                    continue
                same_answer = answer_first is not None and answer_first == self.answer_key(
                    second.get("correct_answer")
                )
                if same_answer and self.is_semantic_duplicate(text_first, text_second):
                    findings.append(AuditFinding(first, second, "same_answer_keywords", difference))
                elif self.similar_intent(text_first, text_second):
                    findings.append(AuditFinding(first, second, "same_intent", difference))
        return findings
