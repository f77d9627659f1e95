from __future__ import annotations

from loincfix.engine.pipeline import ValidationEngine
from loincfix.engine.state import BatchState


def suggestion_node(state: BatchState, engine: ValidationEngine) -> BatchState:
    """Search the catalog for a better code for every record flagged INCORRECT."""
    state.records = engine.map(engine.suggest, state.records)
    return state
