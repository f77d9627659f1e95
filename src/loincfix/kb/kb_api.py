from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from loincfix.kb.catalog_store import CatalogStore
from loincfix.kb.synonyms import SynonymResolver
from loincfix.kb.ucum_mapper import UcumMapperManager
from loincfix.kb.unit_store import UnitMappingStore
from loincfix.parsing.lab_name_parser import LabNameParser

logger = logging.getLogger(__name__)

DEFAULT_PERCENT_PROPERTY_OVERRIDES: Dict[str, List[str]] = {"COAG": ["ACnc"]}


@dataclass
class KnowledgeBase:
    """
    Read-only context shared by every record of a batch.

    Holds the catalog (with its part index), unit tables and mappers, synonym rules
    and the compiled lab-name rules. Built once; nothing here is mutated while records
    are processed, so workers may share it.
    """
    catalog: CatalogStore
    units: UnitMappingStore
    synonyms: SynonymResolver
    parser: LabNameParser
    ucum: UcumMapperManager = field(init=False)
    percent_property_overrides: Dict[str, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_PERCENT_PROPERTY_OVERRIDES.items()}
    )
    _pct_props_by_class: Dict[str, List[str]] = field(init=False, default_factory=dict)

    def __post_init__(self) -> None:
        self.ucum = UcumMapperManager(self.units, get_parts=self._parts_for)
        self._pct_props_by_class = self._build_percent_properties()

    @classmethod
    def from_local_data(cls, data_dir: str = "data", options: Optional[Mapping[str, Any]] = None) -> "KnowledgeBase":
        """
        Construct from the local data folder. The catalog is required; unit tables are optional.
        Raises CatalogLoadError / MalformedRuleError on setup problems.
        """
        options = options or {}
        catalog = CatalogStore.from_dir(data_dir, options.get("catalog_file", "Loinc.csv"))
        units = UnitMappingStore.from_dir(
            data_dir,
            catalog,
            unit_to_ucum_file=options.get("unit_to_ucum_file", "unit-to-ucum.csv"),
            unit_properties_file=options.get("unit_properties_file", "unit-ucum-properties.csv"),
        )
        return cls.build(catalog, units, options)

    @classmethod
    def build(
        cls,
        catalog: CatalogStore,
        units: Optional[UnitMappingStore] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> "KnowledgeBase":
        options = options or {}
        if units is None:
            units = UnitMappingStore()
            units.derive_properties_from_catalog(catalog)
        overrides = options.get("percent_property_overrides")
        kwargs: Dict[str, Any] = {}
        if overrides is not None:
            kwargs["percent_property_overrides"] = {k: list(v or []) for k, v in overrides.items()}
        return cls(
            catalog=catalog,
            units=units,
            synonyms=SynonymResolver.from_options(options),
            parser=LabNameParser.from_options(options),
            **kwargs,
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "catalog": self.catalog.stats(),
            "units": self.units.stats(),
            "specimen_rules": len(self.parser.specimen_rules),
            "time_rules": len(self.parser.time_rules),
            "percent_classes": sorted(self._pct_props_by_class),
        }

    def percent_properties_for_class(self, lab_class: str) -> List[str]:
        """Properties implied by '%' that actually occur with this class in the catalog."""
        return list(self._pct_props_by_class.get(lab_class, []))

    def unit_forms(self, raw_unit: str, converted: str = "", loinc: str = "") -> List[str]:
        forms: List[str] = ["nmol/mL", "nmol"] if raw_unit == "nm" else []
        if converted and converted not in forms:
            forms.append(converted)
        for form in self.ucum.unit_forms(raw_unit, loinc=loinc):
            if form not in forms:
                forms.append(form)
        return forms

    def unit_properties(self, units: Sequence[str]) -> List[str]:
        return self.units.properties_for_units(units)

    def _parts_for(self, loinc: str) -> Optional[Dict[str, str]]:
        entry = self.catalog.get_entry(loinc)
        return dict(entry.parts) if entry else None

    def _build_percent_properties(self) -> Dict[str, List[str]]:
        pct_props = set(self.units.unit_properties("%"))
        by_class: Dict[str, List[str]] = {}
        if not pct_props:
            return by_class
        for entry in self.catalog.entries():
            prop = entry.parts.get("PROPERTY", "")
            if prop in pct_props:
                props = by_class.setdefault(entry.lab_class, [])
                if prop not in props:
                    props.append(prop)
        for lab_class, removed in self.percent_property_overrides.items():
            if lab_class in by_class:
                by_class[lab_class] = [p for p in by_class[lab_class] if p not in removed]
        return by_class
