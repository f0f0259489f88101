from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Iterable, List, Optional, Set

LOGGER = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.86
DEFAULT_AMBIGUOUS_GAP = 0.06
CONTAINMENT_SCORE = 0.92

_NON_ALNUM = re.compile(r"[^a-z0-9]")


@dataclass
class Candidate:
    id: Hashable
    names: List[str]
    member: Any = None

    @property
    def label(self) -> str:
        display = getattr(self.member, "display_name", None)
        if display:
            return str(display)
        return self.names[0] if self.names else str(self.id)


@dataclass
class ScoredCandidate:
    candidate: Candidate
    score: float


@dataclass
class AmbiguousMatch:
    name: str
    best: ScoredCandidate
    second: Optional[ScoredCandidate]


@dataclass
class MatchResult:
    names: List[str]
    matched: Dict[str, Candidate] = field(default_factory=dict)
    unmatched: List[str] = field(default_factory=list)
    ambiguous: List[AmbiguousMatch] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True only when every name was placed; an empty batch passes."""
        return (
            not self.unmatched
            and not self.ambiguous
            and len(self.matched) == len(self.names)
        )

    @property
    def missing(self) -> int:
        return len(self.names) - len(self.matched)

    @property
    def problems(self) -> List[str]:
        ambiguous = {entry.name: entry for entry in self.ambiguous}
        lines: List[str] = []
        for name in self.names:
            if name in self.matched:
                continue
            entry = ambiguous.get(name)
            if entry is None:
                lines.append(f"Unmatched: {name}")
                continue
            detail = f"{entry.best.candidate.label} {entry.best.score:.2f}"
            if entry.second is not None:
                detail += f" vs {entry.second.candidate.label} {entry.second.score:.2f}"
            lines.append(f"Ambiguous: {name} ({detail})")
        return lines


def normalize(value: Optional[str]) -> str:
    return _NON_ALNUM.sub("", (value or "").lower())


def levenshtein(a: str, b: str) -> int:
    row = list(range(len(b) + 1))
    for i in range(1, len(a) + 1):
        prev = row[0]
        row[0] = i
        for j in range(1, len(b) + 1):
            current = row[j]
            cost = 0 if a[i - 1] == b[j - 1] else 1
            row[j] = min(row[j] + 1, row[j - 1] + 1, prev + cost)
            prev = current
    return row[len(b)]


def _normalized_similarity(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if a in b or b in a:
        return CONTAINMENT_SCORE
    return 1 - levenshtein(a, b) / max(len(a), len(b))


def similarity(a: Optional[str], b: Optional[str]) -> float:
    return _normalized_similarity(normalize(a), normalize(b))


def dedupe_names(names: Iterable[Any]) -> List[str]:
    """Strip, drop empties, and collapse case variants keeping the first spelling."""
    seen: Set[str] = set()
    out: List[str] = []
    for raw in names:
        name = str(raw if raw is not None else "").strip()
        if not name:
            continue
        key = name.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(name)
    return out


def clean_variants(variants: Iterable[Optional[str]]) -> List[str]:
    out: List[str] = []
    for variant in variants:
        if variant and variant not in out:
            out.append(variant)
    return out


def candidate_score(name: str, candidate: Candidate) -> float:
    target = normalize(name)
    best = 0.0
    for variant in candidate.names:
        normalized = normalize(variant)
        if target and normalized == target:
            return 1.0
        best = max(best, _normalized_similarity(target, normalized))
    return best


def match_all(
    game_names: Iterable[str],
    candidates: Iterable[Candidate],
    threshold: float = DEFAULT_THRESHOLD,
    ambiguous_gap: float = DEFAULT_AMBIGUOUS_GAP,
) -> MatchResult:
    """Greedily map each game name to one unclaimed candidate.

    Names are processed in input order and a matched candidate is claimed
    for the rest of the call, so an earlier name can take a candidate a
    later name would have scored higher on. A name is left unmatched when
    its best score is below ``threshold`` and ambiguous when the runner-up
    is within ``ambiguous_gap`` of the best.
    """
    pool = list(candidates)
    result = MatchResult(names=dedupe_names(game_names))
    claimed: Set[Hashable] = set()

    for name in result.names:
        best: Optional[ScoredCandidate] = None
        second: Optional[ScoredCandidate] = None
        for candidate in pool:
            if candidate.id in claimed:
                continue
            scored = ScoredCandidate(candidate, candidate_score(name, candidate))
            if best is None or scored.score > best.score:
                second = best
                best = scored
            elif second is None or scored.score > second.score:
                second = scored

        if best is None or best.score < threshold:
            result.unmatched.append(name)
            continue
        if second is not None and best.score - second.score < ambiguous_gap:
            result.ambiguous.append(AmbiguousMatch(name, best, second))
            continue

        result.matched[name] = best.candidate
        claimed.add(best.candidate.id)

    LOGGER.debug(
        "Matched names=%s matched=%s unmatched=%s ambiguous=%s",
        len(result.names),
        len(result.matched),
        len(result.unmatched),
        len(result.ambiguous),
    )
    return result
