from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BatchState(BaseModel):
    """
    Workflow state for one batch run.

    ``records`` holds LabRecord objects; each node mutates only the records it is
    given and returns the state.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Run identity
    run_id: str
    input_path: Optional[str] = None
    output_path: Optional[str] = None
    evidence_path: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    # Ingest outputs
    input_rows: List[Dict[str, Any]] = Field(default_factory=list)
    records: List[Any] = Field(default_factory=list)

    # Report outputs
    summary: Dict[str, Any] = Field(default_factory=dict)
    artifacts: Dict[str, Any] = Field(default_factory=dict)

    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def count(self, judgment: str) -> int:
        return sum(1 for r in self.records if r.judgment.value == judgment)
