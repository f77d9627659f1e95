from __future__ import annotations

from loincfix.engine.pipeline import ValidationEngine
from loincfix.engine.record import Judgment
from loincfix.engine.state import BatchState


def inference_node(state: BatchState, engine: ValidationEngine) -> BatchState:
    state.records = engine.map(engine.infer, state.records)
    return state


def route_after_inference(state: BatchState) -> str:
    if any(r.judgment == Judgment.INCORRECT for r in state.records):
        return "to_suggest"
    return "to_validator"
