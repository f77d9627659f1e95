import pandas as pd
import pytest

from loincfix.kb.ucum_mapper import (
    RuleBasedUnitMapper,
    normalize_ucum,
    regex_map,
    transform_raw_unit,
)
from loincfix.kb.unit_store import UnitMappingStore


class TestRegexMap:
    """Time-denominator spelling fixes."""

    @pytest.mark.parametrize("unit,expected", [
        ("mg/day", "mg/(24.h)"),
        ("mg/24 hr", "mg/(24.h)"),
        ("mg/24hrs", "mg/(24.h)"),
        ("mL/hr", "mL/h"),
        ("mg/dL", None),
    ])
    def test_regex_map(self, unit, expected):
        assert regex_map(unit) == expected

    def test_normalize_ucum(self):
        assert normalize_ucum("mg/ml") == "mg/mL"
        assert normalize_ucum("mg/dl") == "mg/dL"
        assert normalize_ucum("mg/dL") == "mg/dL"
        assert normalize_ucum("") == ""


class TestRuleBasedUnitMapper:
    """Corrections conditioned on the parts of the mapped code."""

    def test_unit_conditioned_on_class_and_property(self, kb):
        assert kb.ucum.map_with("map_rule_based", "/hpf", loinc="5821-4").ucum == "/[HPF]"
        assert kb.ucum.map_with("map_rule_based", "/hpf", loinc="2345-7").status == "invalid"

    def test_disabled_rule_never_fires(self):
        mapper = RuleBasedUnitMapper(lambda loinc: {"CLASS": "SERO"})
        assert mapper("IU", False, "1-1") is None
        assert mapper("U/mL", False, "1-1") == "[arb'U]/mL"

    def test_case_insensitive_unit_match(self):
        mapper = RuleBasedUnitMapper(lambda loinc: {"CLASS": "HEM/BC", "PROPERTY": "NCnc"})
        assert mapper("k/ul", True, "1-1") == "10*3/uL"
        assert mapper("k/ul", False, "1-1") is None

    def test_unknown_code_is_skipped(self):
        mapper = RuleBasedUnitMapper(lambda loinc: None)
        assert mapper("K/uL", False, "0000-0") is None

    def test_falls_back_to_hour_spelling(self):
        mapper = RuleBasedUnitMapper(lambda loinc: {"CLASS": "CHEM"})
        assert mapper("mg/24 HR", False, "1-1") == "mg/(24.h)"


class TestUcumMapperManager:
    """Named mappers tried in order."""

    def test_statuses(self, kb):
        assert kb.ucum.map_with("map_direct", "mg/dl").status == "map_direct"
        ci = kb.ucum.map_with("map_direct", "MG/DL", case_insensitive=True)
        assert (ci.status, ci.ucum) == ("map_direct-ci", "mg/dL")
        assert kb.ucum.map_with("map_direct", "").status == "missing"
        assert kb.ucum.map_with(["map_direct", "map_regex"], "furlong").status == "invalid"

    def test_convert_tries_case_insensitive_last(self, kb):
        assert kb.ucum.convert("mg/dl") == "mg/dL"
        assert kb.ucum.convert("#/HPF") == "/[HPF]"
        assert kb.ucum.convert("furlong") == ""

    def test_unit_forms(self, kb):
        assert kb.ucum.unit_forms("mg/dl") == ["mg/dl", "mg/dL"]
        assert kb.unit_forms("nm")[:2] == ["nmol/mL", "nmol"]
        assert kb.unit_forms("") == []

    def test_register_mapper(self, kb):
        from loincfix.kb.ucum_mapper import UcumMapperManager

        manager = UcumMapperManager(kb.units)
        manager.register_mapper("map_upper", lambda unit, ci, loinc: unit.upper())
        assert manager.mapper_names()[-1] == "map_upper"
        assert manager.map_with("map_upper", "abc").ucum == "ABC"


class TestTransformRawUnit:
    """Context fixes applied before mapping."""

    def test_enzyme_units(self):
        assert transform_raw_unit("IU/L", "ALKALINE PHOSPHATASE") == "U/L"
        assert transform_raw_unit("IU/L", "INSULIN") == "IU/L"

    def test_creatinine_suffix(self):
        assert transform_raw_unit("mg/g Cr", "ALBUMIN") == "mg/g"
        assert transform_raw_unit("", "ALBUMIN") == ""


class TestUnitMappingStore:
    """Unit tables read from the data folder."""

    def test_from_dir(self, tmp_path, catalog):
        pd.DataFrame({"UNIT": ["mg/dl"], "UCUM": ["mg/dL"]}).to_csv(tmp_path / "unit-to-ucum.csv", index=False)
        pd.DataFrame({
            "Raw UNITS": ["mg/dl; mg/100ml", "mystery"],
            "ucum unit": ["mg/dL", "?"],
            "DISPLAY_NAME": ["milligram per deciliter", ""],
            "LOINC_PROPERTY": ["MCnc", "?"],
        }).to_csv(tmp_path / "unit-ucum-properties.csv", index=False)

        store = UnitMappingStore.from_dir(str(tmp_path), catalog)
        assert store.direct_ucum("mg/dl") == "mg/dL"
        assert store.unit_prop_ucum("mg/100ml") == "mg/dL"
        assert store.unit_prop_ucum("MILLIGRAM PER DECILITER", case_insensitive=True) == "mg/dL"
        assert store.unit_properties("mg/dL") == ["MCnc"]
        assert store.unit_properties("mg/100ml") == ["MCnc"]
        assert store.unit_properties("mystery") == []
        assert store.stats()["direct_units"] == 1

    def test_properties_derived_from_catalog(self, tmp_path, catalog):
        store = UnitMappingStore.from_dir(str(tmp_path), catalog)
        assert set(store.unit_properties("%")) == {"MFr", "RelACnc", "ACnc", "NFr"}
        assert store.unit_properties("mg/dL") == ["MCnc"]
        assert any(s.startswith("SKIP") for s in store.stats()["loaded_sources"])

    def test_properties_for_units_is_ordered_union(self, units):
        assert units.properties_for_units(["mg/dL", "%", "g/dL"]) == ["MCnc", "MFr", "NFr", "RelACnc", "ACnc"]
