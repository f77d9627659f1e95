import pytest

from loincfix.engine.matcher import TAG_METHOD_EMPTY_OK, Candidate
from loincfix.engine.record import ORIGIN_PARSED
from loincfix.engine.selector import ScoringWeights, score_candidate, select_best_match


def _cand(kb, loinc_num, relaxations=None):
    return Candidate(entry=kb.catalog.get_entry(loinc_num), relaxations=list(relaxations or []))


class TestScoringWeights:

    def test_defaults(self):
        w = ScoringWeights()
        assert (w.base, w.relaxation_penalty, w.full_match_bonus) == (50.0, 25.0, 50.0)

    def test_from_options(self):
        w = ScoringWeights.from_options({"scoring": {"base": "10", "bogus": 1}})
        assert w.base == 10.0
        assert w.deprecated_penalty == 20.0
        assert ScoringWeights.from_options({}) == ScoringWeights()


class TestScoreCandidate:
    """Preference among accepted candidates."""

    def test_full_match_and_example_unit(self, kb, make_record):
        rec = make_record("2345-7", "GLUCOSE, URINE", "mg/dL")
        rec.add_inferred("SYSTEM", ["Urine"], ORIGIN_PARSED)
        assert score_candidate(rec, _cand(kb, "2350-7"), kb, ScoringWeights()) == 110.0

    def test_relaxed_deprecated_candidate(self, kb, make_record):
        rec = make_record("2345-7", "GLUCOSE, URINE", "mg/dL")
        rec.add_inferred("SYSTEM", ["Urine"], ORIGIN_PARSED)
        cand = _cand(kb, "9999-4", ["specimen-xxx-match-waived"])
        assert score_candidate(rec, cand, kb, ScoringWeights()) == 15.0

    def test_relaxation_penalty_grows_slowly(self, kb, make_record):
        rec = make_record("2345-7", "GLUCOSE", "g/L")
        one = score_candidate(rec, _cand(kb, "2350-7", [TAG_METHOD_EMPTY_OK]), kb, ScoringWeights())
        sixteen = score_candidate(rec, _cand(kb, "2350-7", [TAG_METHOD_EMPTY_OK] * 16), kb, ScoringWeights())
        assert one == 25.0
        assert sixteen == pytest.approx(0.0)

    def test_unspecified_system_prefers_specimen_hint(self, kb, make_record):
        rec = make_record("9999-4", "GLUCOSE", "mg/dL", specimen_source="Ser/Plas")
        w = ScoringWeights()
        assert score_candidate(rec, _cand(kb, "2345-7"), kb, w) == 95.0
        assert score_candidate(rec, _cand(kb, "2339-0"), kb, w) == 60.0

    def test_unspecified_system_falls_back_to_class_default(self, kb, make_record):
        rec = make_record("9999-4", "GLUCOSE", "mg/dL")
        assert score_candidate(rec, _cand(kb, "2345-7"), kb, ScoringWeights()) == 95.0


class TestSelectBestMatch:
    """Ordering and de-duplication."""

    def test_empty(self, kb, make_record):
        assert select_best_match([], make_record("2345-7"), kb) == (None, [])

    def test_best_first_and_duplicates_dropped(self, kb, make_record):
        rec = make_record("2345-7", "GLUCOSE, URINE", "mg/dL")
        rec.add_inferred("SYSTEM", ["Urine"], ORIGIN_PARSED)
        candidates = [
            _cand(kb, "9999-4", ["specimen-xxx-match-waived"]),
            _cand(kb, "2350-7"),
            _cand(kb, "2350-7", [TAG_METHOD_EMPTY_OK]),
        ]
        best, rest = select_best_match(candidates, rec, kb)
        assert best.loinc_num == "2350-7"
        assert best.relaxations == []
        assert [c.loinc_num for c in rest] == ["9999-4"]

    def test_ties_keep_input_order(self, kb, make_record):
        rec = make_record("2160-0", "CREATININE", "")
        candidates = [_cand(kb, "2161-8", ["x"]), _cand(kb, "2345-7", ["y"])]
        best, rest = select_best_match(candidates, rec, kb)
        assert best.loinc_num == "2161-8"
        assert [c.loinc_num for c in rest] == ["2345-7"]
