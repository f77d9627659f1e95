from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from loincfix.engine.record import LabRecord
from loincfix.kb.catalog_store import CatalogEntry
from loincfix.kb.kb_api import KnowledgeBase
from loincfix.kb.parts import FILTER_PART_TYPES, PART_TYPES, UNSPECIFIED_SYSTEM

logger = logging.getLogger(__name__)

DEFAULT_MAX_RELAX_LEVEL = 3
MAX_MISMATCHES = 2
ESCALATABLE_PARTS = frozenset({"METHOD", "CLASS"})

# Mixed-specimen systems that also satisfy a single-specimen request.
MIXED_SPECIMEN_SYSTEMS: Dict[str, List[str]] = {
    "Urine": ["Urine+Ser", "Urine+Ser/Plas"],
    "CSF": ["Ser+CSF", "Ser/Plas+CSF"],
}

TAG_METHOD_EMPTY_OK = "METHOD-empty-ok"
TAG_METHOD_WAIVED = "METHOD-match-waived"
TAG_CLASS_WAIVED = "CLASS-match-waived"
TAG_DEFAULT_SPECIMEN = "matched-with-default-specimen"
TAG_XXX_WAIVED = "specimen-xxx-match-waived"


# -------------------------
# Target profile
# -------------------------

@dataclass
class TargetProfile:
    """
    Hypothesized parts to search for. For each part type: None means "do not compare",
    otherwise the acceptable names (synonym-expanded; [] means "must be absent").
    """
    parts: Dict[str, Optional[List[str]]]

    @classmethod
    def build(
        cls,
        entry: CatalogEntry,
        alt_parts: Mapping[str, Optional[List[str]]],
        kb: KnowledgeBase,
    ) -> "TargetProfile":
        parts: Dict[str, Optional[List[str]]] = {}
        for pt in PART_TYPES:
            if pt in alt_parts and not alt_parts[pt]:
                parts[pt] = None
                continue
            names = alt_parts.get(pt) or ([entry.part(pt)] if entry.part(pt) else [])
            parts[pt] = kb.synonyms.expand(pt, names)
        return cls(parts=parts)

    def get(self, part_type: str) -> Optional[List[str]]:
        return self.parts.get(part_type)

    def filter_constraints(self) -> Dict[str, Optional[List[str]]]:
        """Coarse pool filter over PROPERTY/TIME/SYSTEM/SCALE; the other parts may be relaxed."""
        out: Dict[str, Optional[List[str]]] = {}
        for pt in FILTER_PART_TYPES:
            names = self.parts.get(pt)
            if names is None:
                continue
            allowed = list(names) or [""]
            if pt == "SYSTEM":
                allowed.append(UNSPECIFIED_SYSTEM)
                if "Urine" in allowed:
                    allowed.extend(MIXED_SPECIMEN_SYSTEMS["Urine"])
                elif "CSF" in allowed:
                    allowed.extend(MIXED_SPECIMEN_SYSTEMS["CSF"])
            out[pt] = allowed
        return out

    def render(self) -> str:
        """e.g. 'CHEM; Glucose; MCnc; Pt; Urine; Qn; -' ('*' skipped, '-' absent)."""
        rendered = []
        for pt in PART_TYPES:
            names = self.parts.get(pt)
            rendered.append("*" if names is None else (",".join(names) or "-"))
        return "; ".join(rendered)


# -------------------------
# Component heuristics
# -------------------------

@dataclass(frozen=True)
class MatchContext:
    """Record-level facts the relaxation rules look at."""
    row_num: int
    raw_name: str
    raw_unit: str
    lab_class: str
    default_specimens: Tuple[str, ...] = ()  # empty unless the default-specimen relaxation may be tried


@dataclass(frozen=True)
class ComponentHeuristic:
    """One string-level COMPONENT relaxation: ``accept`` returns the relaxation tag or None."""
    name: str
    applies: Callable[[str, str, TargetProfile, MatchContext], bool]
    accept: Callable[[str, str, TargetProfile, MatchContext], Optional[str]]


def _percent_applies(target: str, candidate: str, profile: TargetProfile, ctx: MatchContext) -> bool:
    return "%" in ctx.raw_unit and "/" not in target and candidate.find("/") > 0


def _percent_accept(target: str, candidate: str, profile: TargetProfile, ctx: MatchContext) -> Optional[str]:
    relaxed = target
    if (
        "crystal" not in ctx.raw_name.lower()
        and relaxed.endswith(" crystals")
        and "crystal" not in candidate.lower()
    ):
        relaxed = relaxed[: -len(" crystals")]
    if candidate.startswith(relaxed + "/") or candidate == relaxed + " actual/Normal":
        return "COMP-denom for %" if relaxed == target else "COMP-denom for %, dropping crystals"
    return None


def _leukocyte_applies(target: str, candidate: str, profile: TargetProfile, ctx: MatchContext) -> bool:
    return not _percent_applies(target, candidate, profile, ctx) and "NCnc" in (profile.get("PROPERTY") or [])


def _leukocyte_accept(target: str, candidate: str, profile: TargetProfile, ctx: MatchContext) -> Optional[str]:
    return "COMP-ignoring /100 leukocytes" if candidate + "/100 leukocytes" == target else None


def _actual_normal_applies(target: str, candidate: str, profile: TargetProfile, ctx: MatchContext) -> bool:
    return any(p.endswith("Cnc") for p in (profile.get("PROPERTY") or []) if p)


def _actual_normal_accept(target: str, candidate: str, profile: TargetProfile, ctx: MatchContext) -> Optional[str]:
    suffix = " actual/Normal"
    if target.endswith(suffix) and target[: -len(suffix)] == candidate:
        return "COMP-dropping actual/Normal"
    return None


def _dropped_qualifier(word: str, pattern: str, tag: str) -> ComponentHeuristic:
    """Candidate equals target minus a qualifier that the raw name never mentions."""
    name_re = re.compile(word, re.I)
    target_re = re.compile(pattern, re.I)

    def applies(target: str, candidate: str, profile: TargetProfile, ctx: MatchContext) -> bool:
        return not name_re.search(ctx.raw_name) and bool(target_re.search(target))

    def accept(target: str, candidate: str, profile: TargetProfile, ctx: MatchContext) -> Optional[str]:
        return tag if target_re.sub("", target, count=1).strip() == candidate else None

    return ComponentHeuristic(name=f"drop-{word}", applies=applies, accept=accept)


COMPONENT_HEURISTICS: List[ComponentHeuristic] = [
    ComponentHeuristic("percent-denominator", _percent_applies, _percent_accept),
    ComponentHeuristic("leukocyte-denominator", _leukocyte_applies, _leukocyte_accept),
    ComponentHeuristic("actual-normal", _actual_normal_applies, _actual_normal_accept),
    _dropped_qualifier("fragments", r" ?fragments", "COMP-dropping fragments"),
    _dropped_qualifier("nucleated", r"\.nucleated", "COMP-dropping .nucleated"),
]


# -------------------------
# Matcher
# -------------------------

@dataclass
class Candidate:
    entry: CatalogEntry
    relaxations: List[str] = field(default_factory=list)
    level: int = 0
    score: float = 0.0

    @property
    def loinc_num(self) -> str:
        return self.entry.loinc_num


@dataclass
class MatchOutcome:
    matched: bool
    level: int
    relaxations: List[str] = field(default_factory=list)
    mismatches: List[str] = field(default_factory=list)


class CandidateMatcher:
    """Searches the catalog for entries satisfying a target profile, with tiered relaxation."""

    def __init__(
        self,
        kb: KnowledgeBase,
        max_relax_level: int = DEFAULT_MAX_RELAX_LEVEL,
        default_specimen_relaxation: bool = True,
        heuristics: Optional[List[ComponentHeuristic]] = None,
    ) -> None:
        self.kb = kb
        self.max_relax_level = int(max_relax_level)
        self.default_specimen_relaxation = bool(default_specimen_relaxation)
        self.heuristics = COMPONENT_HEURISTICS if heuristics is None else heuristics

    @classmethod
    def from_options(cls, kb: KnowledgeBase, options: Mapping[str, Any]) -> "CandidateMatcher":
        return cls(
            kb,
            max_relax_level=options.get("max_relax_level", DEFAULT_MAX_RELAX_LEVEL),
            default_specimen_relaxation=options.get("default_specimen_relaxation", True),
        )

    # -------------------------
    # Record level
    # -------------------------

    def default_specimens_for(self, rec: LabRecord) -> Tuple[str, ...]:
        """
        Specimens to fall back on for SYSTEM when the name gave none: the record's specimen
        hint and the class default, minus any already compatible with the mapped SYSTEM.
        """
        if not self.default_specimen_relaxation or rec.inferred_names("SYSTEM"):
            return ()
        mapped = rec.part("SYSTEM")
        out: List[str] = []
        for specimen in (rec.specimen_source, self.kb.parser.default_specimen(rec.lab_class)):
            if not specimen or specimen in out:
                continue
            if self.kb.synonyms.compatible("SYSTEM", specimen, mapped, rec.lab_class):
                continue
            out.append(specimen)
        return tuple(out)

    def build_target(self, rec: LabRecord) -> Optional[TargetProfile]:
        entry = self.kb.catalog.get_entry(rec.lab_loinc)
        if entry is None:
            return None
        alt_parts: Dict[str, Optional[List[str]]] = dict(rec.alternative_parts())
        if "SYSTEM" not in alt_parts and rec.part("SYSTEM") == UNSPECIFIED_SYSTEM:
            alt_parts["SYSTEM"] = None
        return TargetProfile.build(entry, alt_parts, self.kb)

    def find_candidates(self, rec: LabRecord) -> Tuple[Optional[TargetProfile], List[Candidate]]:
        target = self.build_target(rec)
        if target is None:
            return None, []
        ctx = MatchContext(
            row_num=rec.row_num,
            raw_name=rec.raw_name,
            raw_unit=rec.raw_unit,
            lab_class=rec.lab_class,
            default_specimens=self.default_specimens_for(rec),
        )
        pool = self.kb.catalog.select_by_constraints(target.filter_constraints())
        pool.discard(rec.lab_loinc)

        out: List[Candidate] = []
        for loinc_num in sorted(pool):
            entry = self.kb.catalog.get_entry(loinc_num)
            if entry is None:
                continue
            outcome = self.is_match(target, entry, ctx)
            if outcome.matched:
                out.append(Candidate(entry=entry, relaxations=outcome.relaxations, level=outcome.level))
        logger.debug("row %s: pool=%d accepted=%d target=%s", rec.row_num, len(pool), len(out), target.render())
        return target, out

    # -------------------------
    # Candidate level
    # -------------------------

    def is_match(self, target: TargetProfile, cand: CatalogEntry, ctx: MatchContext, level: int = 0) -> MatchOutcome:
        """
        Compare every part. No mismatch accepts; one or two mismatches confined to METHOD/CLASS
        retry one level up until max_relax_level; anything else rejects.
        """
        relaxations: List[str] = []
        mismatches: List[str] = []
        for pt in PART_TYPES:
            if not self.match_part(pt, target, cand, level, ctx, relaxations):
                mismatches.append(pt)
                if len(mismatches) > MAX_MISMATCHES:
                    break

        if not mismatches:
            return MatchOutcome(matched=True, level=level, relaxations=relaxations)
        if level < self.max_relax_level and set(mismatches) <= ESCALATABLE_PARTS:
            return self.is_match(target, cand, ctx, level + 1)
        return MatchOutcome(matched=False, level=level, mismatches=mismatches)

    def match_part(
        self,
        part_type: str,
        target: TargetProfile,
        cand: CatalogEntry,
        level: int,
        ctx: MatchContext,
        relaxations: List[str],
    ) -> bool:
        wanted = target.get(part_type)
        value = cand.part(part_type)
        if wanted is None or (not wanted and not value) or value in wanted:
            return True

        if part_type == "METHOD":
            if level > 0 and not value:
                relaxations.append(TAG_METHOD_EMPTY_OK)
                return True
            if level > 1:
                relaxations.append(TAG_METHOD_WAIVED)
                return True
        elif part_type == "CLASS":
            if level > 2:
                relaxations.append(TAG_CLASS_WAIVED)
                return True
        elif part_type == "COMPONENT":
            return self.match_component(target, cand, ctx, relaxations)
        elif part_type == "SYSTEM":
            return self.match_system(wanted, value, ctx, relaxations)
        return False

    def match_component(
        self, target: TargetProfile, cand: CatalogEntry, ctx: MatchContext, relaxations: List[str]
    ) -> bool:
        wanted = target.get("COMPONENT") or []
        if not wanted:
            return False
        target_comp, cand_comp = wanted[0], cand.part("COMPONENT")
        for h in self.heuristics:
            if not h.applies(target_comp, cand_comp, target, ctx):
                continue
            tag = h.accept(target_comp, cand_comp, target, ctx)
            if tag:
                relaxations.append(tag)
                return True
        return False

    def match_system(self, wanted: List[str], value: str, ctx: MatchContext, relaxations: List[str]) -> bool:
        compatible = self.kb.synonyms.compatible
        if any(compatible("SYSTEM", sys, value, ctx.lab_class) for sys in wanted):
            return True
        for specimen in ctx.default_specimens:
            if compatible("SYSTEM", specimen, value, ctx.lab_class):
                relaxations.append(TAG_DEFAULT_SPECIMEN)
                logger.debug("row %s: %s via default specimen %s", ctx.row_num, TAG_DEFAULT_SPECIMEN, specimen)
                return True
        if value == UNSPECIFIED_SYSTEM:
            relaxations.append(TAG_XXX_WAIVED)
            return True
        return False
