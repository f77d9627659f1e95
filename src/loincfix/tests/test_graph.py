import json

import pandas as pd

from loincfix.agents.graph import create_graph, route_after_validation
from loincfix.agents.inference_agent import route_after_inference
from loincfix.agents.validator_agent import validator_node
from loincfix.engine.record import Judgment, LabRecord
from loincfix.engine.state import BatchState

ROWS = [
    {"LAB_LOINC": "2345-7", "RAW_LAB_NAME": "GLUCOSE, URINE", "RAW_UNIT": "mg/dL", "NUM_RECORDS": "3"},
    {"LAB_LOINC": "2345-7", "RAW_LAB_NAME": "GLUCOSE", "RAW_UNIT": "mg/dL", "NUM_RECORDS": "1"},
    {"LAB_LOINC": "0000-0", "RAW_LAB_NAME": "GLUCOSE", "RAW_UNIT": "mg/dL", "NUM_RECORDS": "1"},
]


def _run(kb, state, options=None):
    final = create_graph(kb, options or {}).invoke(state)
    return BatchState(**final) if isinstance(final, dict) else final


class TestGraph:
    """End-to-end batch workflow."""

    def test_rows_in_state(self, kb, tmp_path):
        state = BatchState(
            run_id="run_graph",
            input_rows=ROWS,
            output_path=str(tmp_path / "results.csv"),
            evidence_path=str(tmp_path / "evidence.jsonl"),
        )
        final = _run(kb, state)
        assert final.errors == []
        assert final.summary["counts"]["FIXED"] == 1
        assert final.summary["total_weighted"] == 5
        assert final.count("CORRECT") == 1

        out = pd.read_csv(final.artifacts["results"], dtype=str, keep_default_na=False)
        assert list(out["ALGO_JUDGEMENT"]) == ["FIXED", "CORRECT", "EXCLUDED_INVALID_CODE"]
        lines = (tmp_path / "evidence.jsonl").read_text(encoding="utf-8").splitlines()
        assert len(lines) == 3
        assert json.loads(lines[2])["judgment"] == "EXCLUDED_INVALID_CODE"

    def test_input_file_and_no_output(self, kb, tmp_path):
        path = tmp_path / "batch.csv"
        pd.DataFrame(ROWS[1:]).to_csv(path, index=False)
        state = BatchState(run_id="run_file", input_path=str(path), evidence_path=str(tmp_path / "ev.jsonl"))
        final = _run(kb, state)
        assert "results" not in final.artifacts
        assert final.artifacts["evidence_jsonl"] == str(tmp_path / "ev.jsonl")
        assert final.summary["counts"]["CORRECT"] == 1

    def test_empty_batch_warns(self, kb, tmp_path):
        state = BatchState(run_id="run_empty", evidence_path=str(tmp_path / "ev.jsonl"))
        final = _run(kb, state)
        assert final.warnings == ["No input rows to process."]
        assert final.summary["total"] == 0


class TestRouting:
    """Conditional edges and consistency checks."""

    def test_route_after_inference(self):
        rec = LabRecord(lab_loinc="2345-7")
        state = BatchState(run_id="r", records=[rec])
        rec.advance(Judgment.CORRECT)
        assert route_after_inference(state) == "to_validator"
        rec.advance(Judgment.INCORRECT)
        assert route_after_inference(state) == "to_suggest"

    def test_validator_flags_inconsistent_records(self):
        fixed = LabRecord(lab_loinc="2345-7", row_num=2)
        fixed.advance(Judgment.FIXED)
        never = LabRecord(lab_loinc="2345-7", row_num=3)
        state = validator_node(BatchState(run_id="r", records=[fixed, never]))
        assert state.errors == [
            "Row 2: FIXED without a suggestion",
            "Row 2: FIXED without a mapping issue",
            "Row 3: record was never judged",
        ]
        assert route_after_validation(state) == "to_end"
        assert route_after_validation(BatchState(run_id="r")) == "to_report"
