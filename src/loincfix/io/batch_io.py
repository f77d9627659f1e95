from __future__ import annotations

import logging
import os
from typing import Any, Dict, List

import pandas as pd

from loincfix.engine.record import LabRecord

logger = logging.getLogger(__name__)

OUTPUT_COLUMNS = [
    "ALGO_JUDGEMENT",
    "ALGO_MAPPING_ISSUES",
    "parsed_parts",
    "inferred_parts",
    "TARGET_TERM",
    "SGG_LOINC",
    "SGG_LONG_COMMON_NAME",
    "SGG_OTHER",
    "RULE_RELAXED_BY",
]

REQUIRED_INPUT_COLUMNS = ("LAB_LOINC", "RAW_LAB_NAME", "RAW_UNIT")

EXCEL_EXTENSIONS = (".xlsx", ".xlsm")


class BatchFileError(Exception):
    pass


def _is_excel(path: str) -> bool:
    return os.path.splitext(path)[1].lower() in EXCEL_EXTENSIONS


def read_batch(path: str) -> List[Dict[str, Any]]:
    """Rows of the batch file as dicts of strings, column order preserved."""
    if not os.path.exists(path):
        raise BatchFileError(f"Batch file not found: {path}")
    try:
        if _is_excel(path):
            df = pd.read_excel(path, dtype=str, engine="openpyxl").fillna("")
        else:
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
    except (OSError, ValueError) as e:
        raise BatchFileError(f"Unable to read batch file {path}: {e}") from e

    df.columns = [str(c).strip() for c in df.columns]
    missing = [c for c in REQUIRED_INPUT_COLUMNS if c not in df.columns]
    if missing:
        raise BatchFileError(f"Batch file {path} is missing columns: {missing}")
    logger.info("Read %d rows from %s", len(df), path)
    return df.to_dict(orient="records")


def results_frame(rows: List[Dict[str, Any]], records: List[LabRecord]) -> pd.DataFrame:
    """Input rows with the result columns added (or overwritten), in input order."""
    if len(rows) != len(records):
        raise ValueError(f"{len(rows)} input rows but {len(records)} records")
    out_rows = []
    for row, rec in zip(rows, records):
        merged = dict(row)
        merged.update(rec.to_output())
        out_rows.append(merged)
    columns = list(rows[0].keys()) if rows else []
    columns += [c for c in OUTPUT_COLUMNS if c not in columns]
    return pd.DataFrame(out_rows, columns=columns)


def write_results(path: str, rows: List[Dict[str, Any]], records: List[LabRecord]) -> str:
    df = results_frame(rows, records)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    if _is_excel(path):
        df.to_excel(path, index=False, engine="openpyxl")
    else:
        df.to_csv(path, index=False)
    logger.info("Wrote %d rows to %s", len(df), path)
    return path
