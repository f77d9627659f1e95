from __future__ import annotations

import logging
import os
import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from loincfix.kb.catalog_store import CatalogStore, pick_col

logger = logging.getLogger(__name__)

_LIST_DELIM_RE = re.compile(r"[,;]")


def _split_units(value: str, delim: "re.Pattern[str]" = _LIST_DELIM_RE) -> List[str]:
    return [u.strip() for u in delim.split(value or "") if u.strip()]


def _add_unique(index: Dict[str, List[str]], key: str, value: str, first: bool = False) -> None:
    values = index.setdefault(key, [])
    if value in values:
        return
    if first:
        values.insert(0, value)
    else:
        values.append(value)


class UnitMappingStore:
    """
    Unit lookup tables.

    Sources (flexible column names):
      - unit-to-ucum.csv: UNIT, UCUM (direct one-to-one spelling fixes)
      - unit-ucum-properties.csv: Raw UNITS, ucum unit, DISPLAY_NAME, LOINC_PROPERTY
    When the properties table is missing, unit -> property pairs are derived from the
    catalog's EXAMPLE_UCUM_UNITS column.
    """

    def __init__(self) -> None:
        self._direct: Dict[str, str] = {}
        self._direct_ci: Dict[str, str] = {}
        # unit (raw/display/ucum spelling) -> [ucum]
        self._unit_to_ucum: Dict[str, List[str]] = {}
        self._unit_to_ucum_ci: Dict[str, str] = {}
        # unit -> [LOINC property]
        self._unit_props: Dict[str, List[str]] = {}
        self._loaded_sources: List[str] = []

    # -------------------------
    # Construction
    # -------------------------

    @classmethod
    def from_dir(
        cls,
        data_dir: str,
        catalog: CatalogStore,
        unit_to_ucum_file: str = "unit-to-ucum.csv",
        unit_properties_file: str = "unit-ucum-properties.csv",
    ) -> "UnitMappingStore":
        store = cls()
        path = os.path.join(data_dir, unit_to_ucum_file)
        if os.path.exists(path) and os.path.getsize(path) > 0:
            store._load_unit_to_ucum_csv(path)
        else:
            store._loaded_sources.append(f"SKIP (missing/empty): {unit_to_ucum_file}")

        path = os.path.join(data_dir, unit_properties_file)
        if os.path.exists(path) and os.path.getsize(path) > 0:
            store._load_unit_properties_csv(path, catalog)
        else:
            store._loaded_sources.append(f"SKIP (missing/empty): {unit_properties_file}")
            store.derive_properties_from_catalog(catalog)

        for msg in store._loaded_sources:
            logger.info("unit tables: %s", msg)
        return store

    @classmethod
    def from_tables(
        cls,
        direct: Optional[Mapping[str, str]] = None,
        unit_properties: Optional[Mapping[str, Sequence[str]]] = None,
        unit_to_ucum: Optional[Mapping[str, str]] = None,
    ) -> "UnitMappingStore":
        store = cls()
        for unit, ucum in (direct or {}).items():
            store._add_direct(unit, ucum)
        for unit, ucum in (unit_to_ucum or {}).items():
            store._add_unit_ucum(unit, ucum)
        for unit, props in (unit_properties or {}).items():
            for prop in props:
                _add_unique(store._unit_props, unit, prop)
        store._loaded_sources.append("LOADED: <tables>")
        return store

    # -------------------------
    # Public API
    # -------------------------

    def stats(self) -> Dict[str, object]:
        return {
            "loaded_sources": self._loaded_sources,
            "direct_units": len(self._direct),
            "unit_ucum_units": len(self._unit_to_ucum),
            "unit_property_units": len(self._unit_props),
        }

    def unit_properties(self, unit: str) -> List[str]:
        if not unit:
            return []
        return list(self._unit_props.get(unit, []))

    def properties_for_units(self, units: Iterable[str]) -> List[str]:
        """Ordered union of the properties implied by each unit."""
        out: List[str] = []
        for unit in units:
            for prop in self.unit_properties(unit):
                if prop not in out:
                    out.append(prop)
        return out

    def direct_ucum(self, unit: str, case_insensitive: bool = False) -> Optional[str]:
        alt = self._direct_ci.get(unit.upper()) if case_insensitive else self._direct.get(unit)
        return alt if alt and alt != unit else None

    def unit_prop_ucum(self, unit: str, case_insensitive: bool = False) -> Optional[str]:
        if case_insensitive:
            alt = self._unit_to_ucum_ci.get(unit.upper())
        else:
            ucums = self._unit_to_ucum.get(unit)
            alt = ucums[0] if ucums else None
        return alt if alt and alt != unit else None

    def derive_properties_from_catalog(self, catalog: CatalogStore) -> None:
        count = 0
        for entry in catalog.entries():
            prop = entry.parts.get("PROPERTY", "")
            if not prop or not entry.example_ucum_units:
                continue
            for unit in _split_units(entry.example_ucum_units, re.compile(r";")):
                _add_unique(self._unit_props, unit, prop)
                count += 1
        self._loaded_sources.append(f"DERIVED: unit properties from catalog ({count} pairs)")

    # -------------------------
    # Loading
    # -------------------------

    def _add_direct(self, unit: str, ucum: str) -> None:
        self._direct[unit] = ucum
        self._direct_ci[unit.upper()] = ucum

    def _add_unit_ucum(self, unit: str, ucum: str) -> None:
        _add_unique(self._unit_to_ucum, unit, ucum)
        self._unit_to_ucum_ci.setdefault(unit.upper(), self._unit_to_ucum[unit][0])

    def _load_unit_to_ucum_csv(self, path: str) -> None:
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        df.columns = [str(c).strip() for c in df.columns]

        unit_col = pick_col(df.columns, ["UNIT", "unit", "raw unit"])
        ucum_col = pick_col(df.columns, ["UCUM", "ucum unit"])
        if not unit_col or not ucum_col:
            self._loaded_sources.append(
                f"SKIP (schema mismatch): {os.path.basename(path)} (unit_col={unit_col}, ucum_col={ucum_col})"
            )
            return

        for _, row in df.iterrows():
            unit = str(row.get(unit_col, "")).strip()
            ucum = str(row.get(ucum_col, "")).strip()
            if unit and ucum:
                self._add_direct(unit, ucum)

        self._loaded_sources.append(f"LOADED: {os.path.basename(path)} ({len(df)} rows)")

    def _load_unit_properties_csv(self, path: str, catalog: CatalogStore) -> None:
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        df.columns = [str(c).strip() for c in df.columns]

        units_col = pick_col(df.columns, ["Raw UNITS", "UNITS"])
        ucum_col = pick_col(df.columns, ["ucum unit", "ucum"])
        display_col = pick_col(df.columns, ["DISPLAY_NAME"])
        prop_col = pick_col(df.columns, ["LOINC_PROPERTY", "PROPERTY"])
        if not units_col or not ucum_col or not prop_col:
            self._loaded_sources.append(
                f"SKIP (schema mismatch): {os.path.basename(path)} (cols={list(df.columns)})"
            )
            return

        loaded = 0
        for _, row in df.iterrows():
            units = str(row.get(units_col, "")).strip()
            ucum = str(row.get(ucum_col, "")).strip()
            display = str(row.get(display_col, "")).strip() if display_col else ""
            prop_raw = str(row.get(prop_col, "")).strip()

            if units and ucum and "?" not in ucum:
                for u in _split_units(ucum):
                    for source in (units, display):
                        for unit in _split_units(source):
                            self._add_unit_ucum(unit, u)

            if not prop_raw or "?" in prop_raw or not (units or (ucum and "?" not in ucum)):
                continue
            prop = catalog.std_part_name(prop_raw, "PROPERTY") or prop_raw
            for unit in _split_units(units, re.compile(r";")) + _split_units(display, re.compile(r";")):
                _add_unique(self._unit_props, unit, prop)
            for unit in _split_units(ucum, re.compile(r";")):
                _add_unique(self._unit_props, unit, prop, first=True)
            loaded += 1

        self._loaded_sources.append(f"LOADED: {os.path.basename(path)} (property_rows={loaded})")
