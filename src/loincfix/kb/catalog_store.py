from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

import pandas as pd

from loincfix.kb.attribute_index import AttributeIndex
from loincfix.kb.parts import PART_TYPES, check_part_type

logger = logging.getLogger(__name__)


class CatalogLoadError(Exception):
    """Raised when the LOINC catalog cannot be loaded; aborts the batch."""
    pass


def pick_col(columns: Iterable[str], candidates: List[str]) -> Optional[str]:
    """First of ``candidates`` present in ``columns``, matched case-insensitively."""
    col_map = {str(c).lower(): str(c) for c in columns}
    for cand in candidates:
        if cand.lower() in col_map:
            return col_map[cand.lower()]
    return None


# -------------------------
# Data record
# -------------------------

@dataclass
class CatalogEntry:
    loinc_num: str
    parts: Dict[str, str]
    long_common_name: str = ""
    status: str = ""
    example_ucum_units: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def part(self, part_type: str) -> str:
        check_part_type(part_type)
        return self.parts.get(part_type, "")

    @property
    def lab_class(self) -> str:
        return self.parts.get("CLASS", "")


class CatalogStore:
    """
    In-memory LOINC catalog: identifier lookup, canonical part spelling, and the
    part-value index used for candidate pre-filtering.

    Expected source: the Loinc.csv table as published by loinc.org. Column names are
    matched case-insensitively; TIME_ASPCT/SCALE_TYP/METHOD_TYP map to TIME/SCALE/METHOD.
    """

    def __init__(self) -> None:
        # loinc_num -> CatalogEntry
        self._entries: Dict[str, CatalogEntry] = {}
        # part_type -> lower(name) -> canonical name
        self._part_lower_to_name: Dict[str, Dict[str, str]] = {pt: {} for pt in PART_TYPES}
        self._index = AttributeIndex()
        self._loaded_sources: List[str] = []

    # -------------------------
    # Construction
    # -------------------------

    @classmethod
    def from_dir(cls, data_dir: str = "data", catalog_file: str = "Loinc.csv") -> "CatalogStore":
        return cls.from_csv(os.path.join(data_dir, catalog_file))

    @classmethod
    def from_csv(cls, path: str) -> "CatalogStore":
        if not os.path.exists(path) or os.path.getsize(path) == 0:
            raise CatalogLoadError(f"LOINC catalog missing or empty: {path}")
        try:
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
        except (OSError, ValueError) as e:
            raise CatalogLoadError(f"Unable to read LOINC catalog {path}: {e}") from e
        store = cls.from_dataframe(df, source=os.path.basename(path))
        logger.info("Loaded LOINC catalog %s (%d entries)", path, len(store))
        return store

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, source: str = "<dataframe>") -> "CatalogStore":
        store = cls()
        store._load_dataframe(df, source)
        return store

    @classmethod
    def from_records(cls, rows: Iterable[Mapping[str, Any]]) -> "CatalogStore":
        return cls.from_dataframe(pd.DataFrame(list(rows)).fillna(""), source="<records>")

    # -------------------------
    # Public API
    # -------------------------

    def stats(self) -> Dict[str, Any]:
        return {
            "loaded_sources": self._loaded_sources,
            "entries": len(self._entries),
            "part_values": {pt: len(self._index.values(pt)) for pt in PART_TYPES},
        }

    def get_entry(self, loinc_num: str) -> Optional[CatalogEntry]:
        if not loinc_num:
            return None
        return self._entries.get(self._normalize_loinc_code(str(loinc_num)))

    def entries(self) -> Iterable[CatalogEntry]:
        return self._entries.values()

    def std_part_name(self, name: str, part_type: str) -> str:
        """Canonical part spelling for a name with possibly wrong casing, or '' if unknown."""
        check_part_type(part_type)
        key = (name or "").strip().lower()
        if not key:
            return ""
        return self._part_lower_to_name[part_type].get(key, "")

    def has_part_value(self, part_type: str, value: str) -> bool:
        return self._index.has_value(part_type, value)

    def select_by_constraints(self, constraints: Mapping[str, Optional[Iterable[str]]]) -> Set[str]:
        return self._index.select_by_constraints(constraints)

    @property
    def index(self) -> AttributeIndex:
        return self._index

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, loinc_num: object) -> bool:
        return isinstance(loinc_num, str) and self.get_entry(loinc_num) is not None

    # -------------------------
    # Loading
    # -------------------------

    def _load_dataframe(self, df: pd.DataFrame, source: str) -> None:
        df = df.copy()
        df.columns = [str(c).strip() for c in df.columns]

        code_col = pick_col(df.columns, ["LOINC_NUM", "loinc", "code"])
        part_cols = {
            "CLASS": pick_col(df.columns, ["CLASS"]),
            "COMPONENT": pick_col(df.columns, ["COMPONENT"]),
            "PROPERTY": pick_col(df.columns, ["PROPERTY"]),
            "TIME": pick_col(df.columns, ["TIME_ASPCT", "TIME"]),
            "SYSTEM": pick_col(df.columns, ["SYSTEM"]),
            "SCALE": pick_col(df.columns, ["SCALE_TYP", "SCALE"]),
            "METHOD": pick_col(df.columns, ["METHOD_TYP", "METHOD"]),
        }
        name_col = pick_col(df.columns, ["LONG_COMMON_NAME", "long_common_name", "name"])
        status_col = pick_col(df.columns, ["STATUS"])
        ucum_col = pick_col(df.columns, ["EXAMPLE_UCUM_UNITS", "example ucum"])

        missing = [pt for pt in ("COMPONENT", "PROPERTY", "TIME", "SYSTEM", "SCALE") if not part_cols[pt]]
        if not code_col or missing:
            raise CatalogLoadError(
                f"LOINC catalog schema mismatch in {source}: code_col={code_col}, missing parts={missing}"
            )

        for _, row in df.iterrows():
            code = self._normalize_loinc_code(str(row.get(code_col, "")))
            if not code:
                continue
            parts = {pt: (str(row.get(col, "")).strip() if col else "") for pt, col in part_cols.items()}
            entry = CatalogEntry(
                loinc_num=code,
                parts=parts,
                long_common_name=str(row.get(name_col, "")).strip() if name_col else "",
                status=str(row.get(status_col, "")).strip().upper() if status_col else "",
                example_ucum_units=str(row.get(ucum_col, "")).strip() if ucum_col else "",
            )
            self._add_entry(entry)

        self._loaded_sources.append(f"LOADED: {source} ({len(self._entries)} entries)")

    def _add_entry(self, entry: CatalogEntry) -> None:
        if entry.loinc_num in self._entries:
            # first row wins, later duplicates are ignored
            return
        self._entries[entry.loinc_num] = entry
        self._index.add(entry.loinc_num, entry.parts)
        for pt, value in entry.parts.items():
            if value:
                self._part_lower_to_name[pt][value.lower()] = value

    @staticmethod
    def _normalize_loinc_code(code: str) -> str:
        c = (code or "").strip()
        if not c:
            return ""
        if "-" in c:
            return c
        if c.isdigit() and len(c) >= 2:
            return f"{c[:-1]}-{c[-1]}"
        return c
