import pytest

from loincfix.engine.record import LabRecord
from loincfix.kb.catalog_store import CatalogStore
from loincfix.kb.kb_api import KnowledgeBase
from loincfix.kb.parts import PART_TYPES
from loincfix.kb.unit_store import UnitMappingStore

CATALOG_COLUMNS = (
    "LOINC_NUM", "COMPONENT", "PROPERTY", "TIME_ASPCT", "SYSTEM", "SCALE_TYP", "METHOD_TYP",
    "CLASS", "LONG_COMMON_NAME", "STATUS", "EXAMPLE_UCUM_UNITS",
)

CATALOG_ROWS = [
    ("2345-7", "Glucose", "MCnc", "Pt", "Ser/Plas", "Qn", "", "CHEM",
     "Glucose [Mass/volume] in Serum or Plasma", "ACTIVE", "mg/dL"),
    ("2350-7", "Glucose", "MCnc", "Pt", "Urine", "Qn", "", "CHEM",
     "Glucose [Mass/volume] in Urine", "ACTIVE", "mg/dL"),
    ("2339-0", "Glucose", "MCnc", "Pt", "Bld", "Qn", "", "CHEM",
     "Glucose [Mass/volume] in Blood", "ACTIVE", "mg/dL"),
    ("2160-0", "Creatinine", "MCnc", "Pt", "Ser/Plas", "Qn", "", "CHEM",
     "Creatinine [Mass/volume] in Serum or Plasma", "ACTIVE", "mg/dL"),
    ("2161-8", "Creatinine", "MCnc", "Pt", "Urine", "Qn", "", "CHEM",
     "Creatinine [Mass/volume] in Urine", "ACTIVE", "mg/dL"),
    ("2162-6", "Creatinine", "MRat", "24H", "Urine", "Qn", "", "CHEM",
     "Creatinine [Mass/time] in 24 hour Urine", "ACTIVE", "g/(24.h)"),
    ("2986-8", "Testosterone", "MCnc", "Pt", "Ser/Plas", "Qn", "", "CHEM",
     "Testosterone [Mass/volume] in Serum or Plasma", "ACTIVE", "ng/dL"),
    ("2991-8", "Testosterone.free", "MCnc", "Pt", "Ser/Plas", "Qn", "", "CHEM",
     "Testosterone Free [Mass/volume] in Serum or Plasma", "ACTIVE", "pg/mL"),
    ("4547-6", "Hemoglobin A1c", "MCnc", "Pt", "Bld", "Qn", "", "CHEM",
     "Hemoglobin A1c [Mass/volume] in Blood", "ACTIVE", "g/dL"),
    ("4548-4", "Hemoglobin A1c/Hemoglobin.total", "MFr", "Pt", "Bld", "Qn", "", "CHEM",
     "Hemoglobin A1c/Hemoglobin.total in Blood", "ACTIVE", "%"),
    ("3209-1", "Coagulation factor VII activity actual/Normal", "RelACnc", "Pt", "PPP", "Qn", "Coag", "COAG",
     "Coagulation factor VII activity actual/Normal in Platelet poor plasma by Coagulation assay",
     "ACTIVE", "%"),
    ("3198-9", "Coagulation factor VII", "ACnc", "Pt", "PPP", "Qn", "Coag", "COAG",
     "Coagulation factor VII [Units/volume] in Platelet poor plasma by Coagulation assay",
     "ACTIVE", "%"),
    ("5821-4", "Leukocytes", "Naric", "Pt", "Urine sed", "Qn", "Microscopy.light.HPF", "UA",
     "Leukocytes [#/area] in Urine sediment by Microscopy high power field", "ACTIVE", "/[HPF]"),
    ("5799-2", "Leukocytes", "Naric", "Pt", "Urine sed", "Qn", "Microscopy.light.LPF", "UA",
     "Leukocytes [#/area] in Urine sediment by Microscopy low power field", "ACTIVE", "/[LPF]"),
    ("8123-2", "Cells.CD3/100 cells", "NFr", "Pt", "Bld", "Qn", "", "CELLMARK",
     "CD3 cells/100 cells in Blood", "ACTIVE", "%"),
    ("9999-4", "Glucose", "MCnc", "Pt", "XXX", "Qn", "", "CHEM",
     "Glucose [Mass/volume] in Specimen", "DEPRECATED", "mg/dL"),
    ("1754-1", "Albumin", "SRto", "Pt", "Urine", "Qn", "", "CHEM",
     "Albumin [Substance ratio] in Urine", "ACTIVE", ""),
    ("14959-1", "Albumin/Creatinine", "SRto", "Pt", "Urine", "Qn", "", "CHEM",
     "Albumin/Creatinine [Substance ratio] in Urine", "ACTIVE", "mmol/mol"),
]

UNIT_PROPERTIES = {
    "mg/dL": ["MCnc"],
    "ng/dL": ["MCnc"],
    "g/dL": ["MCnc"],
    "%": ["MFr", "NFr", "RelACnc", "ACnc"],
    "/[HPF]": ["Naric"],
    "mg/(24.h)": ["MRat"],
}


def catalog_rows():
    return [dict(zip(CATALOG_COLUMNS, row)) for row in CATALOG_ROWS]


@pytest.fixture(scope="session")
def catalog():
    return CatalogStore.from_records(catalog_rows())


@pytest.fixture(scope="session")
def units():
    return UnitMappingStore.from_tables(
        direct={"mg/dl": "mg/dL"},
        unit_properties=UNIT_PROPERTIES,
        unit_to_ucum={"#/hpf": "/[HPF]"},
    )


@pytest.fixture(scope="session")
def kb(catalog, units):
    return KnowledgeBase.build(catalog, units)


@pytest.fixture
def make_record(kb):
    """Builds a record with the parts of its assigned code already filled in."""
    def _make(lab_loinc, raw_name="", raw_unit="", **kwargs):
        rec = LabRecord(lab_loinc=lab_loinc, raw_name=raw_name, raw_unit=raw_unit, **kwargs)
        entry = kb.catalog.get_entry(lab_loinc)
        if entry is not None:
            rec.parts = {pt: entry.part(pt) for pt in PART_TYPES}
            rec.long_common_name = entry.long_common_name
            rec.example_ucum_units = entry.example_ucum_units
        return rec
    return _make


@pytest.fixture
def catalog_row_dicts():
    return catalog_rows()
