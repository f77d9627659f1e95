from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence

from loincfix.engine.record import ORIGIN_INFERRED, ORIGIN_PARSED, Judgment, LabRecord
from loincfix.kb.kb_api import KnowledgeBase

logger = logging.getLogger(__name__)

INTERPRETATION_SCALES = ["Nom", "Nar", "Ord", "Doc"]
INTERPRETATION_PROPERTIES = ["Imp"]

_DURATION_RE = re.compile(r"^[0-9]+H$")
_CD_ANTIBODY_RE = re.compile(r"^CD([0-9]+) ANTIBODY$", re.I)
_XPF_TRAILING_BRACKET_RE = re.compile(r"\s*]\s*$")


def extract_hpf_lpf(unit_or_method: str) -> Optional[str]:
    """'HPF' / 'LPF' when the unit or method ends with that field marker."""
    if not unit_or_method:
        return None
    s = _XPF_TRAILING_BRACKET_RE.sub("", unit_or_method.upper())
    if s.endswith("HPF"):
        return "HPF"
    if s.endswith("LPF"):
        return "LPF"
    return None


class InferenceEngine:
    """
    Compares clues from a record's raw name and unit against its mapped parts.

    Each check may add inferred part values and, on disagreement, a mapping issue
    (tag + confidence) that moves the record to INCORRECT.
    """

    def __init__(self, kb: KnowledgeBase) -> None:
        self.kb = kb

    def infer_and_validate(self, rec: LabRecord, unit_forms: Sequence[str]) -> LabRecord:
        if rec.judgment.excluded:
            return rec
        unit_props = self.kb.unit_properties(unit_forms)

        self.infer_component_by_modifier(rec)
        self.infer_system(rec)
        self.infer_time(rec)
        self.infer_scale_and_property(rec, unit_props)
        self.infer_resolution_marker(rec, unit_forms)
        self.infer_urinalysis_field_count(rec)
        self.infer_cd_antibody(rec)
        self.infer_creatinine_ratio(rec)
        return rec

    # -------------------------
    # Disagreement check
    # -------------------------

    def flag_if_disagree(
        self,
        rec: LabRecord,
        part_type: str,
        inferred: List[str],
        confidence: float,
        absence_ok: bool = True,
    ) -> bool:
        """True when an issue was raised for part_type."""
        current = rec.part(part_type)
        if not inferred or (absence_ok and not current):
            return False
        candidates = self.kb.synonyms.expand(part_type, inferred) or []
        if not current or not any(
            self.kb.synonyms.compatible(part_type, name, current, rec.lab_class) for name in candidates
        ):
            rec.add_issue(part_type, confidence)
            rec.advance(Judgment.INCORRECT)
            logger.debug("row %s: %s disagrees, mapped=%r inferred=%s", rec.row_num, part_type, current, inferred)
            return True
        return False

    # -------------------------
    # Checks, in run order
    # -------------------------

    def infer_component_by_modifier(self, rec: LabRecord) -> None:
        adj = self.kb.parser.adjusted_component(rec.raw_name, rec.part("COMPONENT"), rec.lab_class)
        if not adj.component:
            return
        if not self.kb.catalog.has_part_value("COMPONENT", adj.component):
            logger.debug("row %s: constructed component %r not in catalog, ignored", rec.row_num, adj.component)
            return
        rec.add_inferred("COMPONENT", [adj.component], ORIGIN_INFERRED)
        self.flag_if_disagree(rec, "COMPONENT", [adj.component], 0.8)

    def infer_system(self, rec: LabRecord) -> None:
        system_upper = rec.part("SYSTEM").upper()
        origin = ORIGIN_PARSED
        found = [r.value for r in self.kb.parser.extract_specimen(rec.raw_name, rec.lab_class)]
        if (
            not found
            and system_upper.startswith("BLD")
            and system_upper != "BLD"
            and rec.lab_class == "HEM/BC"
        ):
            origin = ORIGIN_INFERRED
            found = ["Bld"]
        if found:
            rec.add_inferred("SYSTEM", found, origin)
            self.flag_if_disagree(rec, "SYSTEM", found, 0.6)

    def infer_time(self, rec: LabRecord) -> None:
        """Duration in the unit implies a rate property; 'random' in the name implies a point in time."""
        mapped_prop = rec.part("PROPERTY")
        inferred_prop: Optional[List[str]] = None

        times = [r.value for r in self.kb.parser.extract_time(rec.raw_unit, "RAW_UNIT", rec.lab_class)]
        if times:
            if _DURATION_RE.match(times[0]) and mapped_prop.endswith("Cnc"):
                inferred_prop = [mapped_prop[:-3] + "Rat"]
        else:
            times = [r.value for r in self.kb.parser.extract_time(rec.raw_name, "RAW_LAB_NAME", rec.lab_class)]
            if times and times[0] == "Pt" and mapped_prop.endswith("Rat"):
                inferred_prop = [mapped_prop[:-3] + "Cnc"]

        if times:
            rec.add_inferred("TIME", times, ORIGIN_PARSED)
            self.flag_if_disagree(rec, "TIME", times, 0.5)
        if inferred_prop:
            rec.add_inferred("PROPERTY", inferred_prop, ORIGIN_INFERRED)
            self.flag_if_disagree(rec, "PROPERTY", inferred_prop, 0.6)

    def infer_scale_and_property(self, rec: LabRecord, unit_props: List[str]) -> None:
        if "%" in rec.raw_unit:
            unit_props = self.kb.percent_properties_for_class(rec.lab_class)
        is_interpretation = "INTERPRETATION" in rec.raw_name.upper()

        scale = INTERPRETATION_SCALES if is_interpretation else (["Qn"] if rec.raw_unit else None)
        if scale and self.flag_if_disagree(rec, "SCALE", scale, 1.0):
            rec.add_inferred("SCALE", list(scale), ORIGIN_INFERRED)

        prop = INTERPRETATION_PROPERTIES if is_interpretation else (unit_props or None)
        if prop and self.flag_if_disagree(rec, "PROPERTY", prop, 0.6):
            rec.add_inferred("PROPERTY", list(prop), ORIGIN_INFERRED)

    def infer_resolution_marker(self, rec: LabRecord, unit_forms: Sequence[str]) -> None:
        """High/low power field markers must agree between the raw unit and the mapped method or unit."""
        raw_xpf = next((x for x in (extract_hpf_lpf(u) for u in unit_forms) if x), None)
        if not raw_xpf:
            return
        method = rec.part("METHOD")
        method_xpf = extract_hpf_lpf(method)
        mapped_xpf = method_xpf or extract_hpf_lpf(rec.example_ucum_units)
        if mapped_xpf and mapped_xpf != raw_xpf:
            rec.add_issue(f"{mapped_xpf}-{raw_xpf}", 1.0)
            rec.advance(Judgment.INCORRECT)
            if method_xpf:
                rec.add_inferred("METHOD", [method.replace(mapped_xpf, raw_xpf, 1)], ORIGIN_INFERRED)

    def infer_urinalysis_field_count(self, rec: LabRecord) -> None:
        """UA counts per HPF/LPF are Naric/Qn on urine, by light microscopy at that field."""
        raw_xpf = extract_hpf_lpf(rec.raw_unit)
        method = rec.part("METHOD")
        mapped_xpf = extract_hpf_lpf(method) or extract_hpf_lpf(rec.example_ucum_units)
        method_wrong = raw_xpf != mapped_xpf and bool(mapped_xpf or method.startswith("Microscopy.light"))

        if rec.lab_class != "UA" or not raw_xpf:
            return
        if rec.part("SCALE") == "Qn" and rec.part("PROPERTY") == "Naric" and not method_wrong:
            return

        rec.add_inferred("SYSTEM", ["Urine", "Urine sed"], ORIGIN_INFERRED)
        if rec.part("SCALE") != "Qn":
            rec.add_inferred("SCALE", ["Qn"], ORIGIN_INFERRED)
            self.flag_if_disagree(rec, "SCALE", ["Qn"], 0.5)
        if rec.part("PROPERTY") != "Naric":
            rec.add_inferred("PROPERTY", ["Naric"], ORIGIN_INFERRED)
            self.flag_if_disagree(rec, "PROPERTY", ["Naric"], 0.5)
        if method_wrong:
            new_method = "Microscopy.light." + raw_xpf
            rec.add_inferred("METHOD", [new_method], ORIGIN_INFERRED)
            self.flag_if_disagree(rec, "METHOD", [new_method], 0.5, absence_ok=False)

    def infer_cd_antibody(self, rec: LabRecord) -> None:
        """'CD4 ANTIBODY' in % on blood is the CELLMARK cell fraction, not an antibody."""
        m = _CD_ANTIBODY_RE.match(rec.raw_name.strip())
        if not m or rec.lab_class == "CELLMARK":
            return
        if rec.specimen_source.upper() != "BLD" or "%" not in rec.raw_unit:
            return
        target = {
            "COMPONENT": f"Cells.CD{m.group(1)}/100 cells",
            "CLASS": "CELLMARK",
            "PROPERTY": "NFr",
            "SCALE": "Qn",
            "TIME": "Pt",
            "SYSTEM": "Bld",
        }
        for part_type, value in target.items():
            if rec.part(part_type) != value:
                rec.add_inferred(part_type, [value], ORIGIN_INFERRED)
                self.flag_if_disagree(rec, part_type, [value], 0.5)

    def infer_creatinine_ratio(self, rec: LabRecord) -> None:
        """A urine substance ratio is reported against creatinine."""
        props = rec.inferred_names("PROPERTY") or [rec.part("PROPERTY")]
        component = rec.part("COMPONENT")
        if rec.part("SYSTEM") != "Urine" or "SRto" not in props or component.endswith("/Creatinine"):
            return
        candidate = component + "/Creatinine"
        if not self.kb.catalog.has_part_value("COMPONENT", candidate):
            logger.debug("row %s: constructed component %r not in catalog", rec.row_num, candidate)
            return
        rec.add_inferred("COMPONENT", [candidate], ORIGIN_INFERRED)
        self.flag_if_disagree(rec, "COMPONENT", [candidate], 0.8)
