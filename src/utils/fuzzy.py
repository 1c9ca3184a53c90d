"""
Fuzzy organization-name matching.

Vendor consoles and the PSA spell the same client differently
("J.B. Dawson, LLC" vs "JB Dawson"). Names are normalized first, then
scored with difflib's SequenceMatcher ratio. A match is only accepted when
it is both close (>= 0.9) and clearly ahead of the runner-up (gap >= 0.1).
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from difflib import SequenceMatcher
from typing import Optional

from pydantic import BaseModel

from src.models.ticket import Company

MIN_SIMILARITY = 0.9
MIN_GAP_TO_SECOND = 0.1

_CORPORATE_SUFFIXES = re.compile(
    r"\b(inc|incorporated|llc|ltd|limited|corp|corporation|co|company|llp|pllc|lp|"
    r"group|holdings|enterprises|services|solutions|technologies|technology|tech)\b"
)


def normalize_name(name: str) -> str:
    """Lower-case, drop punctuation and corporate suffixes, collapse whitespace."""
    text = name.lower()
    text = text.replace(".", "")
    text = re.sub(r"['’]", "", text)   # O'Brien -> obrien
    text = text.replace("&", " and ")
    text = _CORPORATE_SUFFIXES.sub("", text)
    text = re.sub(r"[^a-z0-9\s]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def similarity(a: str, b: str) -> float:
    """0.0–1.0 similarity of two already-normalized names."""
    if not a and not b:
        return 1.0
    return SequenceMatcher(None, a, b).ratio()


class NameMatch(BaseModel):
    company: Company
    score: float
    confident: bool   # best score leads the runner-up by at least MIN_GAP_TO_SECOND


def find_best_match(name: str, candidates: Iterable[Company]) -> Optional[NameMatch]:
    """Best-scoring company for *name*, or None when nothing is close enough.

    A returned match with ``confident=False`` is a suggestion only: another
    company scored nearly as well.
    """
    target = normalize_name(name or "")
    if not target:
        return None

    scored: list[tuple[float, Company]] = []
    for company in candidates:
        normalized = normalize_name(company.name)
        if normalized:
            scored.append((similarity(target, normalized), company))
    if not scored:
        return None

    scored.sort(key=lambda pair: (-pair[0], pair[1].id))
    best_score, best = scored[0]
    if best_score < MIN_SIMILARITY:
        return None

    runner_up = scored[1][0] if len(scored) > 1 else 0.0
    return NameMatch(
        company=best,
        score=best_score,
        confident=round(best_score - runner_up, 6) >= MIN_GAP_TO_SECOND,
    )
