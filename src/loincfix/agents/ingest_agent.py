from __future__ import annotations

import logging

from loincfix.engine.pipeline import records_from_rows
from loincfix.engine.state import BatchState
from loincfix.io.batch_io import read_batch

logger = logging.getLogger(__name__)


def ingest_node(state: BatchState) -> BatchState:
    """Load the batch rows (unless given in the state) and build one record per row."""
    if not state.input_rows and state.input_path:
        state.input_rows = read_batch(state.input_path)
    if not state.input_rows:
        state.add_warning("No input rows to process.")
    state.records = records_from_rows(state.input_rows)
    logger.info("Ingested %d records", len(state.records))
    return state
