import pytest

from loincfix.kb.attribute_index import AttributeIndex
from loincfix.kb.catalog_store import CatalogLoadError, CatalogStore, pick_col
from loincfix.kb.parts import PART_TYPES, UnknownPartTypeError


class TestSelectByConstraints:
    """Set queries over the catalog part index."""

    def test_single_value_query_mirrors_catalog(self, catalog):
        for pt in PART_TYPES:
            values = {entry.part(pt) for entry in catalog.entries()}
            for value in values:
                expected = {e.loinc_num for e in catalog.entries() if e.part(pt) == value}
                assert catalog.select_by_constraints({pt: [value]}) == expected

    def test_or_within_and_across(self, catalog):
        hits = catalog.select_by_constraints({"SYSTEM": ["Urine", "Bld"], "PROPERTY": ["MCnc"]})
        assert hits == {"2350-7", "2339-0", "2161-8", "4547-6"}

    def test_none_is_ignored(self, catalog):
        assert catalog.select_by_constraints({"SYSTEM": None, "TIME": ["24H"]}) == {"2162-6"}

    def test_empty_string_means_absent(self, catalog):
        hits = catalog.select_by_constraints({"METHOD": [""], "CLASS": ["UA", "CHEM"]})
        assert "5821-4" not in hits
        assert "2345-7" in hits

    def test_no_constraints_returns_everything(self, catalog):
        assert catalog.select_by_constraints({}) == {e.loinc_num for e in catalog.entries()}
        assert catalog.select_by_constraints({"SYSTEM": None}) == {e.loinc_num for e in catalog.entries()}

    def test_unmatched_value_returns_empty(self, catalog):
        assert catalog.select_by_constraints({"SYSTEM": ["Urine"], "TIME": ["8H"]}) == set()

    def test_unknown_part_type_is_fatal(self, catalog):
        with pytest.raises(UnknownPartTypeError):
            catalog.select_by_constraints({"SPECIMEN": ["Urine"]})
        with pytest.raises(AssertionError):
            catalog.index.ids_for("UNITS", "mg/dL")


class TestAttributeIndex:
    """Index built directly from part profiles."""

    def test_absent_part_indexed_under_empty_value(self):
        index = AttributeIndex.build({
            "1-1": {"COMPONENT": "A", "SYSTEM": "Urine"},
            "2-2": {"COMPONENT": "B"},
        })
        assert index.ids_for("SYSTEM", "") == {"2-2"}
        assert index.has_value("SYSTEM", "Urine")
        assert not index.has_value("SYSTEM", "")
        assert index.values("COMPONENT") == {"A", "B"}
        assert len(index) == 2


class TestCatalogStore:
    """Catalog loading and lookups."""

    def test_lookup_and_canonical_names(self, catalog):
        entry = catalog.get_entry("2345-7")
        assert entry.part("SYSTEM") == "Ser/Plas"
        assert entry.lab_class == "CHEM"
        assert catalog.get_entry("23457") is entry
        assert catalog.get_entry("0000-0") is None
        assert catalog.std_part_name("ser/plas", "SYSTEM") == "Ser/Plas"
        assert catalog.std_part_name("nowhere", "SYSTEM") == ""
        assert "2350-7" in catalog

    def test_status_is_upper_cased(self, catalog):
        assert catalog.get_entry("9999-4").status == "DEPRECATED"

    def test_first_duplicate_wins(self, catalog_row_dicts):
        rows = catalog_row_dicts[:2]
        dup = dict(rows[0], SYSTEM="Urine")
        store = CatalogStore.from_records(rows + [dup])
        assert len(store) == 2
        assert store.get_entry("2345-7").part("SYSTEM") == "Ser/Plas"

    def test_missing_columns_raise(self):
        with pytest.raises(CatalogLoadError):
            CatalogStore.from_records([{"LOINC_NUM": "1-1", "COMPONENT": "A"}])

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(CatalogLoadError):
            CatalogStore.from_dir(str(tmp_path))

    def test_from_csv(self, tmp_path, catalog_row_dicts):
        import pandas as pd

        path = tmp_path / "Loinc.csv"
        pd.DataFrame(catalog_row_dicts).to_csv(path, index=False)
        store = CatalogStore.from_csv(str(path))
        assert len(store) == len(catalog_row_dicts)
        assert store.stats()["loaded_sources"][0].startswith("LOADED: Loinc.csv")

    def test_pick_col_is_case_insensitive_and_ordered(self):
        columns = ["loinc_num", "Ucum Unit", "UCUM"]
        assert pick_col(columns, ["LOINC_NUM"]) == "loinc_num"
        assert pick_col(columns, ["ucum unit", "ucum"]) == "Ucum Unit"
        assert pick_col(columns, ["DISPLAY_NAME"]) is None
