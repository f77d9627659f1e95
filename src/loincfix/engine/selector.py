from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Any, List, Mapping, Optional, Tuple

from loincfix.engine.matcher import TAG_XXX_WAIVED, Candidate
from loincfix.engine.record import LabRecord
from loincfix.kb.kb_api import KnowledgeBase
from loincfix.kb.parts import PART_TYPES, UNSPECIFIED_SYSTEM

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoringWeights:
    base: float = 50.0
    relaxation_penalty: float = 25.0
    relaxation_exponent: float = 0.25
    deprecated_penalty: float = 20.0
    discouraged_penalty: float = 10.0
    unspecified_system_bonus: float = 35.0
    example_unit_bonus: float = 10.0
    full_match_bonus: float = 50.0

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "ScoringWeights":
        cfg = options.get("scoring") or {}
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(cfg) - known)
        if unknown:
            logger.warning("Ignoring unknown scoring keys: %s", unknown)
        return cls(**{k: float(v) for k, v in cfg.items() if k in known})


def _matches_all_parts(rec: LabRecord, cand: Candidate) -> bool:
    for pt in PART_TYPES:
        value = cand.entry.part(pt)
        inferred = rec.inferred_names(pt)
        if inferred:
            if value not in inferred:
                return False
        elif rec.part(pt) != value:
            return False
    return True


def score_candidate(rec: LabRecord, cand: Candidate, kb: KnowledgeBase, weights: ScoringWeights) -> float:
    score = weights.base
    if cand.relaxations:
        score -= weights.relaxation_penalty * len(cand.relaxations) ** weights.relaxation_exponent
    if cand.entry.status == "DEPRECATED":
        score -= weights.deprecated_penalty
    elif cand.entry.status == "DISCOURAGED":
        score -= weights.discouraged_penalty

    system_skipped = rec.part("SYSTEM") == UNSPECIFIED_SYSTEM and not rec.inferred_names("SYSTEM")
    if system_skipped or TAG_XXX_WAIVED in cand.relaxations:
        cand_system = cand.entry.part("SYSTEM")
        hints = [rec.specimen_source, kb.parser.default_specimen(rec.lab_class)]
        if any(h and kb.synonyms.compatible("SYSTEM", cand_system, h, rec.lab_class) for h in hints):
            score += weights.unspecified_system_bonus

    if rec.raw_unit and rec.raw_unit == cand.entry.example_ucum_units:
        score += weights.example_unit_bonus
    if not cand.relaxations and _matches_all_parts(rec, cand):
        score += weights.full_match_bonus
    return score


def select_best_match(
    candidates: List[Candidate],
    rec: LabRecord,
    kb: KnowledgeBase,
    weights: Optional[ScoringWeights] = None,
) -> Tuple[Optional[Candidate], List[Candidate]]:
    """
    Score, sort (stable, highest first) and drop repeated identifiers.
    Returns (best, remaining alternates in order); (None, []) when there is nothing to pick.
    """
    if not candidates:
        return None, []
    weights = weights or ScoringWeights()
    for cand in candidates:
        cand.score = score_candidate(rec, cand, kb, weights)

    ranked = sorted(candidates, key=lambda c: c.score, reverse=True)
    seen = set()
    unique: List[Candidate] = []
    for cand in ranked:
        if cand.loinc_num in seen:
            continue
        seen.add(cand.loinc_num)
        unique.append(cand)

    if len(unique) > 1:
        logger.debug(
            "row %s: %d candidates, scores=%s",
            rec.row_num,
            len(unique),
            ", ".join(f"{c.loinc_num}:{c.score:.1f}" for c in unique),
        )
    return unique[0], unique[1:]
