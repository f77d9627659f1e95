from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Set

from loincfix.kb.parts import PART_TYPES, check_part_type


class AttributeIndex:
    """
    Per part type, maps a part value to the set of catalog identifiers holding it.

    An absent part is indexed under the empty string so that queries can ask for
    "no value" explicitly. Built once from the catalog and read-only afterwards.
    """

    def __init__(self) -> None:
        # part_type -> value -> {loinc_num}
        self._index: Dict[str, Dict[str, Set[str]]] = {pt: {} for pt in PART_TYPES}
        self._all_ids: Set[str] = set()

    @classmethod
    def build(cls, profiles: Mapping[str, Mapping[str, str]]) -> "AttributeIndex":
        """profiles: loinc_num -> {part_type: value}"""
        index = cls()
        for loinc_num, parts in profiles.items():
            index.add(loinc_num, parts)
        return index

    def add(self, loinc_num: str, parts: Mapping[str, str]) -> None:
        self._all_ids.add(loinc_num)
        for pt in PART_TYPES:
            value = parts.get(pt) or ""
            self._index[pt].setdefault(value, set()).add(loinc_num)

    def ids_for(self, part_type: str, value: str) -> Set[str]:
        check_part_type(part_type)
        return set(self._index[part_type].get(value or "", ()))

    def has_value(self, part_type: str, value: str) -> bool:
        """True if some catalog entry carries this (non-empty) value for the part type."""
        check_part_type(part_type)
        return bool(value) and value in self._index[part_type]

    def values(self, part_type: str) -> Set[str]:
        check_part_type(part_type)
        return {v for v in self._index[part_type] if v}

    def select_by_constraints(self, constraints: Mapping[str, Optional[Iterable[str]]]) -> Set[str]:
        """
        AND across part types, OR within a part type.

        A part type mapped to None is ignored. An empty string among the allowed values means
        "part absent is acceptable". With no active constraint at all every identifier is returned.
        """
        result: Optional[Set[str]] = None
        for pt, allowed in constraints.items():
            check_part_type(pt)
            if allowed is None:
                continue
            hits: Set[str] = set()
            for value in allowed:
                hits |= self._index[pt].get(value or "", set())
            result = hits if result is None else result & hits
            if not result:
                return set()
        return set(self._all_ids) if result is None else result

    def __len__(self) -> int:
        return len(self._all_ids)
