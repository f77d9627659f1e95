import math

import pytest

from loincfix.engine.record import ORIGIN_INFERRED, ORIGIN_PARSED, Judgment, LabRecord, Suggestion


class TestJudgment:
    """Monotone judgment transitions."""

    def test_forward_only(self):
        rec = LabRecord(lab_loinc="2345-7")
        assert rec.advance(Judgment.CORRECT)
        assert rec.advance(Judgment.INCORRECT)
        assert not rec.advance(Judgment.CORRECT)
        assert rec.judgment == Judgment.INCORRECT
        assert rec.advance(Judgment.FIXED)
        assert not rec.advance(Judgment.INCORRECT)
        assert rec.judgment == Judgment.FIXED

    def test_excluded_is_terminal(self):
        rec = LabRecord(lab_loinc="0000-0")
        assert rec.advance(Judgment.EXCLUDED_INVALID_CODE)
        assert not rec.advance(Judgment.FIXED)
        assert rec.judgment == Judgment.EXCLUDED_INVALID_CODE
        assert rec.judgment.excluded
        assert not Judgment.INCORRECT.excluded


class TestLabRecord:
    """Issues, inferred parts and rendering."""

    def test_issue_tags_are_unique(self, make_record):
        rec = make_record("2345-7")
        rec.add_issue("SYSTEM", 0.6)
        rec.add_issue("SYSTEM", 1.0)
        assert [(i.tag, i.confidence) for i in rec.issues] == [("SYSTEM", 0.6)]

    def test_lone_copy_of_assigned_value_is_dropped(self, make_record):
        rec = make_record("2350-7")
        rec.add_inferred("SYSTEM", ["Urine"], ORIGIN_PARSED)
        assert rec.inferred == {}
        rec.add_inferred("SYSTEM", ["Urine", "Urine sed"], ORIGIN_INFERRED)
        assert rec.inferred_names("SYSTEM") == ["Urine", "Urine sed"]
        rec.add_inferred("SYSTEM", ["Urine sed"], ORIGIN_PARSED)
        assert rec.inferred["SYSTEM"].origins == [ORIGIN_INFERRED, ORIGIN_INFERRED]

    def test_empty_names_rejected(self, make_record):
        with pytest.raises(ValueError):
            make_record("2345-7").add_inferred("TIME", [], ORIGIN_PARSED)

    def test_unknown_part_type(self, make_record):
        with pytest.raises(AssertionError):
            make_record("2345-7").add_inferred("UNIT", ["mg"], ORIGIN_PARSED)

    def test_alternative_parts(self, make_record):
        rec = make_record("2161-8")
        rec.add_inferred("TIME", ["24H"], ORIGIN_PARSED)
        rec.add_inferred("PROPERTY", ["MRat"], ORIGIN_INFERRED)
        assert rec.alternative_parts() == {"PROPERTY": ["MRat"], "TIME": ["24H"]}

    def test_rendered_inferred_groups_by_origin(self, make_record):
        rec = make_record("2161-8")
        rec.add_inferred("TIME", ["24H"], ORIGIN_PARSED)
        rec.add_inferred("SYSTEM", ["Urine sed"], ORIGIN_PARSED)
        rec.add_inferred("PROPERTY", ["MRat"], ORIGIN_INFERRED)
        assert rec.rendered_inferred() == {
            "parsed_parts": "TIME=[24H]; SYSTEM=[Urine sed]",
            "inferred_parts": "PROPERTY=[MRat]",
        }

    def test_to_output(self, make_record):
        rec = make_record("2345-7", "GLUCOSE, URINE", "mg/dL")
        rec.add_issue("SYSTEM", 0.6)
        rec.add_target_term("CHEM; Glucose; MCnc; Pt; Urine; Qn; -")
        rec.suggestion = Suggestion(
            loinc_num="2350-7",
            long_common_name="Glucose [Mass/volume] in Urine",
            relaxations=[],
            alternates=[{"loinc_num": "9999-4", "long_common_name": "Glucose [Mass/volume] in Specimen"}],
        )
        rec.advance(Judgment.FIXED)
        out = rec.to_output()
        assert out["ALGO_JUDGEMENT"] == "FIXED"
        assert out["ALGO_MAPPING_ISSUES"] == "SYSTEM"
        assert out["SGG_LOINC"] == "2350-7"
        assert out["SGG_OTHER"] == "9999-4:{Glucose [Mass/volume] in Specimen}"
        assert out["RULE_RELAXED_BY"] == ""
        assert out["parsed_parts"] == ""

    def test_to_audit(self, make_record):
        rec = make_record("2345-7", "GLUCOSE, URINE", "mg/dL")
        rec.add_inferred("SYSTEM", ["Urine"], ORIGIN_PARSED)
        audit = rec.to_audit()
        assert audit["input"]["LAB_LOINC"] == "2345-7"
        assert audit["mapped_parts"]["SYSTEM"] == "Ser/Plas"
        assert audit["inferred"] == {"SYSTEM": [{"value": "Urine", "origin": "parsed"}]}
        assert audit["suggestion"] is None


class TestFromRow:
    """Input row conversion."""

    def test_defaults_and_extras(self):
        rec = LabRecord.from_row(
            {"LAB_LOINC": " 2345-7 ", "RAW_LAB_NAME": "GLUCOSE ", "RAW_UNIT": math.nan, "SITE": "A"},
            position=3,
        )
        assert rec.lab_loinc == "2345-7"
        assert rec.raw_name == "GLUCOSE "
        assert rec.raw_unit == ""
        assert rec.row_num == 5
        assert rec.num_records == 1
        assert rec.extra == {"SITE": "A"}

    def test_explicit_row_num_and_weight(self):
        rec = LabRecord.from_row({"LAB_LOINC": "2345-7", "ROW_NUM": "17", "NUM_RECORDS": "250.0"})
        assert (rec.row_num, rec.num_records) == (17, 250)
        assert LabRecord.from_row({"NUM_RECORDS": "many"}).num_records == 1
