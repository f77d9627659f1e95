from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from loincfix.engine.record import Judgment, LabRecord


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def write_jsonl(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    ensure_dir(os.path.dirname(path) or ".")
    with open(path, "w", encoding="utf-8") as f:
        for r in rows:
            f.write(json.dumps(r, ensure_ascii=False) + "\n")


def build_audit_rows(run_id: str, records: List[LabRecord]) -> List[Dict[str, Any]]:
    """
    One audit-friendly row per record: the input fields, the mapped parts, the judgment
    with its issues and confidences, inferred parts with their origins, the rendered
    target profile and the suggestion (with relaxations) if any.
    """
    ts = utc_now_iso()
    out: List[Dict[str, Any]] = []
    for rec in records:
        row = {"run_id": run_id, "timestamp": ts}
        row.update(rec.to_audit())
        out.append(row)
    return out


def summarize_judgments(records: List[LabRecord]) -> Dict[str, Any]:
    """Counts per judgment, plain and weighted by NUM_RECORDS."""
    counts = {j.value: 0 for j in Judgment if j is not Judgment.UNPROCESSED}
    weighted = dict(counts)
    for rec in records:
        key = rec.judgment.value
        counts[key] = counts.get(key, 0) + 1
        weighted[key] = weighted.get(key, 0) + rec.num_records
    total = len(records)
    total_weighted = sum(weighted.values())
    return {
        "total": total,
        "total_weighted": total_weighted,
        "counts": counts,
        "weighted_counts": weighted,
        "percentages": {k: round(100.0 * v / total, 2) if total else 0.0 for k, v in counts.items()},
    }
