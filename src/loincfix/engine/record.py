from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from loincfix.kb.parts import PART_TYPES, check_part_type

ORIGIN_PARSED = "parsed"
ORIGIN_INFERRED = "inferred"


class Judgment(str, Enum):
    UNPROCESSED = "UNPROCESSED"
    EXCLUDED_INVALID_CODE = "EXCLUDED_INVALID_CODE"
    EXCLUDED_NON_TEXTUAL_NAME = "EXCLUDED_NON_TEXTUAL_NAME"
    EXCLUDED_NON_QUANTITATIVE = "EXCLUDED_NON_QUANTITATIVE"
    CORRECT = "CORRECT"
    INCORRECT = "INCORRECT"
    FIXED = "FIXED"

    @property
    def excluded(self) -> bool:
        return self in _EXCLUDED

    @property
    def rank(self) -> int:
        return _RANK[self]


_EXCLUDED = frozenset(
    {Judgment.EXCLUDED_INVALID_CODE, Judgment.EXCLUDED_NON_TEXTUAL_NAME, Judgment.EXCLUDED_NON_QUANTITATIVE}
)
_RANK = {
    Judgment.UNPROCESSED: 0,
    Judgment.EXCLUDED_INVALID_CODE: 1,
    Judgment.EXCLUDED_NON_TEXTUAL_NAME: 1,
    Judgment.EXCLUDED_NON_QUANTITATIVE: 1,
    Judgment.CORRECT: 1,
    Judgment.INCORRECT: 2,
    Judgment.FIXED: 3,
}


@dataclass
class MappingIssue:
    tag: str
    confidence: float


@dataclass
class InferredPart:
    """Inferred names for one part type; names are unique, origins run parallel to names."""
    names: List[str] = field(default_factory=list)
    origins: List[str] = field(default_factory=list)


@dataclass
class Suggestion:
    loinc_num: str
    long_common_name: str
    relaxations: List[str]
    alternates: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class LabRecord:
    """
    One mapping row under validation: the raw lab name/unit, the LOINC it was mapped
    to, and a copy of that LOINC's parts. Mutated only by its own processing.
    """
    lab_loinc: str
    raw_name: str = ""
    raw_unit: str = ""
    specimen_source: str = ""
    inclusion_category: str = ""
    row_num: int = 0
    num_records: int = 1
    parts: Dict[str, str] = field(default_factory=lambda: {pt: "" for pt in PART_TYPES})
    long_common_name: str = ""
    example_ucum_units: str = ""
    ucum_converted: str = ""
    unit_forms: List[str] = field(default_factory=list)

    judgment: Judgment = Judgment.UNPROCESSED
    issues: List[MappingIssue] = field(default_factory=list)
    inferred: Dict[str, InferredPart] = field(default_factory=dict)
    target_terms: List[str] = field(default_factory=list)
    suggestion: Optional[Suggestion] = None
    # input columns carried through unchanged
    extra: Dict[str, Any] = field(default_factory=dict)

    # -------------------------
    # Part access
    # -------------------------

    def part(self, part_type: str) -> str:
        check_part_type(part_type)
        return self.parts.get(part_type, "")

    @property
    def lab_class(self) -> str:
        return self.parts.get("CLASS", "")

    def inferred_names(self, part_type: str) -> List[str]:
        check_part_type(part_type)
        info = self.inferred.get(part_type)
        return list(info.names) if info else []

    # -------------------------
    # Mutation
    # -------------------------

    def advance(self, judgment: Judgment) -> bool:
        """
        Move the judgment forward. Excluded states are terminal and a record never
        moves back to a lower state; such requests are ignored and return False.
        """
        if self.judgment.excluded:
            return False
        if judgment.rank < self.judgment.rank:
            return False
        self.judgment = judgment
        return True

    def add_issue(self, tag: str, confidence: float) -> None:
        if any(i.tag == tag for i in self.issues):
            return
        self.issues.append(MappingIssue(tag=tag, confidence=float(confidence)))

    def add_inferred(self, part_type: str, names: List[str], origin: str) -> None:
        check_part_type(part_type)
        if not names:
            raise ValueError(f"No names given for inferred {part_type}")
        info = self.inferred.get(part_type)
        if info is None:
            # a lone clue equal to the assigned value carries no information
            if len(set(names)) == 1 and names[0] == self.part(part_type):
                return
            info = self.inferred[part_type] = InferredPart()
        for name in names:
            if name not in info.names:
                info.names.append(name)
                info.origins.append(origin)

    def add_target_term(self, term: str) -> None:
        if term not in self.target_terms:
            self.target_terms.append(term)

    # -------------------------
    # Rendering
    # -------------------------

    def alternative_parts(self) -> Dict[str, List[str]]:
        """Inferred parts that would change the profile: everything but a lone copy of the assigned value."""
        out: Dict[str, List[str]] = {}
        for pt in PART_TYPES:
            info = self.inferred.get(pt)
            if not info or not info.names:
                continue
            if len(info.names) == 1 and info.names[0] == self.part(pt):
                continue
            out[pt] = list(info.names)
        return out

    def rendered_inferred(self) -> Dict[str, str]:
        """{'parsed_parts': 'SYSTEM=[Urine]; ...', 'inferred_parts': ...}"""
        merged: Dict[str, List[str]] = {}
        for pt in PART_TYPES:
            info = self.inferred.get(pt)
            if not info:
                continue
            by_origin: Dict[str, List[str]] = {}
            for name, origin in zip(info.names, info.origins):
                by_origin.setdefault(origin, []).append(name)
            for origin, names in by_origin.items():
                merged.setdefault(f"{origin}_parts", []).append(f"{pt}=[{','.join(sorted(names))}]")
        return {
            "parsed_parts": "; ".join(merged.get(f"{ORIGIN_PARSED}_parts", [])),
            "inferred_parts": "; ".join(merged.get(f"{ORIGIN_INFERRED}_parts", [])),
        }

    def to_output(self) -> Dict[str, str]:
        s = self.suggestion
        out = {
            "ALGO_JUDGEMENT": self.judgment.value,
            "ALGO_MAPPING_ISSUES": "; ".join(i.tag for i in self.issues),
            "TARGET_TERM": "; ".join(self.target_terms),
            "SGG_LOINC": s.loinc_num if s else "",
            "SGG_LONG_COMMON_NAME": s.long_common_name if s else "",
            "SGG_OTHER": "; ".join(f"{a['loinc_num']}:{{{a['long_common_name']}}}" for a in s.alternates) if s else "",
            "RULE_RELAXED_BY": "; ".join(s.relaxations) if s else "",
        }
        out.update(self.rendered_inferred())
        return out

    def to_audit(self) -> Dict[str, Any]:
        return {
            "row_num": self.row_num,
            "input": {
                "LAB_LOINC": self.lab_loinc,
                "RAW_LAB_NAME": self.raw_name,
                "RAW_UNIT": self.raw_unit,
                "SPECIMEN_SOURCE": self.specimen_source,
            },
            "mapped_parts": dict(self.parts),
            "unit_forms": list(self.unit_forms),
            "judgment": self.judgment.value,
            "issues": [{"tag": i.tag, "confidence": i.confidence} for i in self.issues],
            "inferred": {
                pt: [{"value": n, "origin": o} for n, o in zip(info.names, info.origins)]
                for pt, info in self.inferred.items()
            },
            "target_terms": list(self.target_terms),
            "suggestion": None if self.suggestion is None else {
                "loinc_num": self.suggestion.loinc_num,
                "long_common_name": self.suggestion.long_common_name,
                "relaxations": list(self.suggestion.relaxations),
                "alternates": [dict(a) for a in self.suggestion.alternates],
            },
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any], position: int = 0) -> "LabRecord":
        """Build from an input row; parts are filled later from the catalog."""
        def text(key: str) -> str:
            value = row.get(key)
            if value is None:
                return ""
            if isinstance(value, float) and value != value:  # NaN
                return ""
            return str(value).strip() if key != "RAW_LAB_NAME" else str(value)

        known = {"LAB_LOINC", "RAW_LAB_NAME", "RAW_UNIT", "SPECIMEN_SOURCE", "Inclusion category", "ROW_NUM", "NUM_RECORDS"}
        return cls(
            lab_loinc=text("LAB_LOINC"),
            raw_name=text("RAW_LAB_NAME"),
            raw_unit=text("RAW_UNIT"),
            specimen_source=text("SPECIMEN_SOURCE"),
            inclusion_category=text("Inclusion category"),
            row_num=_as_int(row.get("ROW_NUM"), position + 2),
            num_records=_as_int(row.get("NUM_RECORDS"), 1),
            extra={k: v for k, v in row.items() if k not in known},
        )


def _as_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(value))
    except (TypeError, ValueError):
        return default
