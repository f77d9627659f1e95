from loincfix.engine.record import Judgment
from loincfix.engine.state import BatchState


def validator_node(state: BatchState) -> BatchState:
    # Enforce: judgments agree with what each record carries
    for r in state.records:
        if r.judgment == Judgment.FIXED and r.suggestion is None:
            state.add_error(f"Row {r.row_num}: FIXED without a suggestion")
        if r.judgment in (Judgment.INCORRECT, Judgment.FIXED) and not r.issues:
            state.add_error(f"Row {r.row_num}: {r.judgment.value} without a mapping issue")
        if r.judgment.excluded and r.inferred:
            state.add_error(f"Row {r.row_num}: excluded record carries inferred parts")
        if r.judgment == Judgment.UNPROCESSED:
            state.add_error(f"Row {r.row_num}: record was never judged")
    return state
