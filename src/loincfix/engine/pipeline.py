from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from loincfix.engine.inference import InferenceEngine
from loincfix.engine.matcher import CandidateMatcher
from loincfix.engine.record import Judgment, LabRecord, Suggestion
from loincfix.engine.selector import ScoringWeights, select_best_match
from loincfix.kb.kb_api import KnowledgeBase
from loincfix.kb.parts import PART_TYPES
from loincfix.kb.ucum_mapper import transform_raw_unit

logger = logging.getLogger(__name__)

# Site codes seen in SPECIMEN_SOURCE that are not LOINC system names; '' drops the value.
SPECIMEN_SOURCE_CODES: Dict[str, str] = {
    "SER_PLAS": "Ser/Plas",
    "BODY_FLD": "Body fld",
    "PLR_FLD": "Plr fld",
    "RESPIRATOR": "Respiratory",
    "UN": "",
}

NON_QUANTITATIVE_CATEGORY = "non qn"
_NON_TEXTUAL_RE = re.compile(r"^[^a-zA-Z]+$")


def records_from_rows(rows: Iterable[Mapping[str, Any]]) -> List[LabRecord]:
    return [LabRecord.from_row(row, position=i) for i, row in enumerate(rows)]


def judgment_counts(records: Iterable[LabRecord]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for rec in records:
        counts[rec.judgment.value] = counts.get(rec.judgment.value, 0) + 1
    return counts


class ValidationEngine:
    """
    Runs each record through: catalog lookup, pre-processing, initial judgment,
    inference, and (for records with issues) candidate search and selection.

    Records are independent; with max_workers > 1 they run on a thread pool and
    come back in input order.
    """

    def __init__(self, kb: KnowledgeBase, options: Optional[Mapping[str, Any]] = None) -> None:
        options = options or {}
        self.kb = kb
        self.inference = InferenceEngine(kb)
        self.matcher = CandidateMatcher.from_options(kb, options)
        self.weights = ScoringWeights.from_options(options)
        self.max_workers = max(1, int(options.get("max_workers") or 1))

    # -------------------------
    # Batch
    # -------------------------

    def run(self, records: List[LabRecord]) -> List[LabRecord]:
        logger.info("Processing %d records (max_workers=%d)", len(records), self.max_workers)
        out = self.map(self.process, records)
        logger.info("Judgments: %s", judgment_counts(out))
        return out

    def map(self, fn: Callable[[LabRecord], LabRecord], records: List[LabRecord]) -> List[LabRecord]:
        if self.max_workers > 1 and len(records) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                return list(pool.map(fn, records))
        return [fn(rec) for rec in records]

    def process(self, rec: LabRecord) -> LabRecord:
        self.infer(rec)
        return self.suggest(rec)

    def infer(self, rec: LabRecord) -> LabRecord:
        self.prepare(rec)
        if rec.judgment.excluded:
            return rec
        return self.inference.infer_and_validate(rec, rec.unit_forms)

    # -------------------------
    # Steps
    # -------------------------

    def prepare(self, rec: LabRecord) -> LabRecord:
        entry = self.kb.catalog.get_entry(rec.lab_loinc)
        if entry is not None:
            rec.parts = {pt: entry.part(pt) for pt in PART_TYPES}
            rec.long_common_name = entry.long_common_name
            rec.example_ucum_units = entry.example_ucum_units

        rec.specimen_source = self.normalize_specimen_source(rec.specimen_source, rec.row_num)
        rec.advance(self.initial_judgment(rec))
        if rec.judgment.excluded:
            logger.debug("row %s: %s", rec.row_num, rec.judgment.value)
            return rec

        loinc = entry.loinc_num if entry is not None else rec.lab_loinc
        unit = transform_raw_unit(rec.raw_unit, rec.raw_name)
        rec.ucum_converted = self.kb.ucum.convert(unit, loinc)
        rec.unit_forms = self.kb.unit_forms(unit, rec.ucum_converted, loinc)
        return rec

    def initial_judgment(self, rec: LabRecord) -> Judgment:
        if not rec.lab_loinc or self.kb.catalog.get_entry(rec.lab_loinc) is None:
            return Judgment.EXCLUDED_INVALID_CODE
        if not rec.raw_name or _NON_TEXTUAL_RE.match(rec.raw_name):
            return Judgment.EXCLUDED_NON_TEXTUAL_NAME
        if rec.inclusion_category.strip().lower() == NON_QUANTITATIVE_CATEGORY:
            return Judgment.EXCLUDED_NON_QUANTITATIVE
        return Judgment.CORRECT

    def normalize_specimen_source(self, value: str, row_num: int = 0) -> str:
        """Single canonical SYSTEM name for the hint, or '' when unknown or ambiguous."""
        found: List[str] = []
        for code in (v.strip() for v in (value or "").split(";")):
            if not code:
                continue
            if code in SPECIMEN_SOURCE_CODES:
                name = SPECIMEN_SOURCE_CODES[code]
                if not name:
                    continue
            else:
                name = self.kb.catalog.std_part_name(code, "SYSTEM")
                if not name:
                    logger.warning("row %s: unknown SPECIMEN_SOURCE %r", row_num, code)
                    continue
            if name not in found:
                found.append(name)
        if len(found) > 1:
            logger.warning("row %s: multiple SPECIMEN_SOURCE values %s ignored", row_num, found)
        return found[0] if len(found) == 1 else ""

    def suggest(self, rec: LabRecord) -> LabRecord:
        if rec.judgment.excluded or not rec.issues or not rec.alternative_parts():
            return rec
        target, candidates = self.matcher.find_candidates(rec)
        if target is not None:
            rec.add_target_term(target.render())
        best, rest = select_best_match(candidates, rec, self.kb, self.weights)
        if best is None:
            return rec
        rec.suggestion = Suggestion(
            loinc_num=best.loinc_num,
            long_common_name=best.entry.long_common_name,
            relaxations=list(best.relaxations),
            alternates=[{"loinc_num": c.loinc_num, "long_common_name": c.entry.long_common_name} for c in rest],
        )
        rec.advance(Judgment.FIXED)
        logger.debug("row %s: FIXED -> %s (%d alternates)", rec.row_num, best.loinc_num, len(rest))
        return rec


def validate_and_suggest(
    records: List[LabRecord],
    kb: KnowledgeBase,
    options: Optional[Mapping[str, Any]] = None,
) -> List[LabRecord]:
    """Batch entry point: annotate every record in place and return them in input order."""
    return ValidationEngine(kb, options).run(records)
