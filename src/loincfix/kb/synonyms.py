from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from loincfix.kb.parts import check_part_type

# Interchangeable part names; used to widen target profiles and disagreement checks.
DEFAULT_SYNONYM_GROUPS: Dict[str, List[List[str]]] = {
    "SYSTEM": [
        ["Ser", "Plas", "Ser/Plas"],
        ["Bld", "Ser/Plas/Bld"],
    ],
}

# Pairs that are acceptable as "the same" when judging a mapping, optionally only for some classes.
DEFAULT_COMPATIBLE_GROUPS: List[Dict[str, Any]] = [
    {"part": "SCALE", "values": ["Qn", "OrdQn"]},
    {"part": "SYSTEM", "values": ["Urine", "Urine sed"], "classes": ["UA"]},
    {"part": "SYSTEM", "values": ["PPP", "Plas", "Ser/Plas"], "classes": ["COAG"]},
    {"part": "SYSTEM", "values": ["Ser", "Plas", "Ser/Plas", "Ser/Plas/Bld"]},
    {"part": "SYSTEM", "values": ["Urine", "Urine+Ser", "Urine+Ser/Plas"]},
    {"part": "SYSTEM", "values": ["CSF", "Ser+CSF", "Ser/Plas+CSF"]},
]


@dataclass(frozen=True)
class CompatibleGroup:
    part_type: str
    values: FrozenSet[str]
    classes: Optional[FrozenSet[str]] = None

    def covers(self, part_type: str, p1: str, p2: str, lab_class: str) -> bool:
        if part_type != self.part_type:
            return False
        if self.classes is not None and lab_class not in self.classes:
            return False
        return p1 in self.values and p2 in self.values


class SynonymResolver:
    """Synonym groups plus class-conditioned compatibility rules for part values."""

    def __init__(
        self,
        groups: Optional[Mapping[str, Sequence[Sequence[str]]]] = None,
        compatible: Optional[Iterable[Mapping[str, Any]]] = None,
    ) -> None:
        # part_type -> name -> group (tuple, in configured order)
        self._synonyms: Dict[str, Dict[str, Tuple[str, ...]]] = {}
        for part_type, part_groups in (DEFAULT_SYNONYM_GROUPS if groups is None else groups).items():
            check_part_type(part_type)
            by_name = self._synonyms.setdefault(part_type, {})
            for group in part_groups:
                members = tuple(group)
                for name in members:
                    by_name[name] = members

        self._compatible: List[CompatibleGroup] = []
        for cfg in (DEFAULT_COMPATIBLE_GROUPS if compatible is None else compatible):
            part_type = check_part_type(cfg["part"])
            classes = cfg.get("classes")
            self._compatible.append(
                CompatibleGroup(
                    part_type=part_type,
                    values=frozenset(cfg["values"]),
                    classes=frozenset(classes) if classes else None,
                )
            )

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "SynonymResolver":
        cfg = options.get("synonyms") or {}
        return cls(groups=cfg.get("groups"), compatible=cfg.get("compatible"))

    def synonyms(self, part_type: str, name: str) -> Optional[Tuple[str, ...]]:
        return self._synonyms.get(part_type, {}).get(name)

    def expand(self, part_type: str, names: Optional[Iterable[str]]) -> Optional[List[str]]:
        """Names followed by any synonyms not already present; None passes through."""
        if names is None:
            return None
        out = list(names)
        by_name = self._synonyms.get(part_type)
        if not by_name:
            return out
        for name in list(out):
            for syn in by_name.get(name, ()):
                if syn not in out:
                    out.append(syn)
        return out

    def compatible(self, part_type: str, p1: str, p2: str, lab_class: str = "") -> bool:
        """Whether two part names may be treated as equal for judging a mapping."""
        if p1 == p2 or (not p1 and not p2):
            return True
        if not p1 or not p2:
            return False
        for group in self._compatible:
            if group.covers(part_type, p1, p2, lab_class):
                return True
        return p2 in (self.synonyms(part_type, p1) or ()) or p1 in (self.synonyms(part_type, p2) or ())
