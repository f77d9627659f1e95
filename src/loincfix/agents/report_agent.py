import logging

from loincfix.engine.results_log import build_audit_rows, summarize_judgments, write_jsonl
from loincfix.engine.state import BatchState
from loincfix.io.batch_io import write_results

logger = logging.getLogger(__name__)


def report_node(state: BatchState) -> BatchState:
    """
    Report Agent:
    Writes the annotated batch file, the JSON-lines audit log and the judgment summary.
    """
    state.summary = summarize_judgments(state.records)

    output_path = state.output_path or state.options.get("output_path")
    if output_path:
        state.artifacts["results"] = write_results(output_path, state.input_rows, state.records)

    evidence_path = (
        state.evidence_path
        or state.options.get("evidence_path")
        or f"artifacts/{state.run_id}/evidence.jsonl"
    )
    write_jsonl(evidence_path, build_audit_rows(state.run_id, state.records))
    state.artifacts["evidence_jsonl"] = evidence_path

    logger.info("Summary: %s", state.summary["counts"])
    return state
