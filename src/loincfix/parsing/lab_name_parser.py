from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from loincfix.parsing.extraction import (
    ExtractionResult,
    ExtractionRule,
    MalformedRuleError,
    compile_rules,
    run_extractors,
)

logger = logging.getLogger(__name__)

# -------------------------
# Rule tables
# -------------------------

# Class NEVER keeps a rule in the table while switching it off.
DEFAULT_SPECIMEN_RULES: List[Dict[str, Any]] = [
    {"pattern": ["CSF", "CEREBROSPINAL FLUID"], "part_name": "CSF"},
    {"pattern": ["Urine", "UA", "Ur", "urn"], "part_name": "Urine", "classes": ["!ALLERGY"]},
    {"pattern": ["saliva", "oral fld", "oral fluid"], "part_name": "Saliva"},
    {"pattern": ["plasma", "plas"], "part_name": "Ser/Plas", "classes": ["!CELLMARK", "!HEM/BC"]},
    {"pattern": ["red blood cell", "red blood cells", "RBC", "RBCs"], "part_name": "RBC",
     "classes": ["CHEM", "DRUG/TOX"]},
    {"pattern": ["white blood cell", "white blood cells", "WBC"], "part_name": "WBC", "classes": ["NEVER"]},
    {"pattern": ["leukocyte", "leukocytes", "leucocyte", "leucocytes"], "part_name": "WBC", "classes": ["CHEM"]},
    {"pattern": ["platelet", "platelets"], "part_name": "Platelets", "classes": ["NEVER"],
     "unless": r"\b(poor|rich) plasma\b"},
    {"pattern": "Bld"},
    {"pattern": "whole blood", "part_name": "Bld"},
    {"pattern": ["Stool", "feces", "fecal"], "part_name": "Stool"},
    {"pattern": "serum", "part_name": "Ser/Plas"},
    {"pattern": "tissue", "part_name": "Tiss"},
    {"pattern": "pleural fluid", "part_name": "Plr fld"},
    {"pattern": "pericardial fluid", "part_name": "Pericard fld"},
    {"pattern": "peritoneal fluid", "part_name": "Periton fld"},
    {"pattern": "dialysis fluid", "part_name": "Dial fld"},
    {"pattern": ["Body fluid", "Body fld"], "part_name": "Body fld", "classes": ["!UA"]},
    {"pattern": ["Amniotic Fluid", "Amnio fld"], "part_name": "Amnio fld"},
    {"pattern": ["fluid"], "part_name": "Body fld", "classes": ["!UA"], "unless": r"\binfluenz"},
    {"pattern": ["fld"], "part_name": "Body fld", "classes": ["!UA"], "unless": r"\b(flu|influenz)"},
    {"pattern": "adrenal vein", "part_name": "Adrenal vein"},
    {"pattern": "renal vein", "part_name": "Renal vein"},
    {"pattern": ["DBS", "Dried blood spot"], "part_name": "Bld.dot"},
    {"pattern": "Hair", "part_name": "Hair", "unless": r"\b(animal|horse|cow)\b"},
    {"pattern": "breath", "part_name": "Exhl gas"},
    {"pattern": ["inferior vena cava", "IVC"], "part_name": "Vena cava.inferior"},
    {"pattern": ["Right adrenal vein", "R adrenal Vein"], "part_name": "Adrenal vein.right"},
    {"pattern": ["Left adrenal vein", "L adrenal Vein"], "part_name": "Adrenal vein.left"},
    {"pattern": ["blood capillary", "capillary blood"], "part_name": "BldC"},
    {"pattern": "Semen", "part_name": "Semen"},
    {"pattern": "POC", "part_name": "Bld", "classes": ["NEVER"]},
]

DEFAULT_TIME_RULES: List[Dict[str, Any]] = [
    {"selector": "RAW_LAB_NAME", "pattern": "random", "part_name": "Pt"},
    {"selector": "RAW_LAB_NAME", "pattern": "spot", "part_name": "Pt", "classes": ["NEVER"]},
    # "mg/24 hr", "24 HR", "/6hrs" -> 24H / 6H
    {"selector": "RAW_UNIT", "kind": "duration",
     "regex": r"(?:^|/)\s*([0-9]+)\s*(h|hr|hrs|hour|hours)\s*$"},
]

DEFAULT_SPECIMEN_BY_CLASS: Dict[str, str] = {
    "CHEM": "Ser/Plas",
    "DRUG/TOX": "Ser/Plas",
    "HEM/BC": "Bld",
    "COAG": "PPP",
    "MICRO": "Ser",
}


# -------------------------
# Component modifiers
# -------------------------

DEFAULT_MODIFIER_CLASSES = ("CHEM", "DRUG/TOX")

# token, connector, classes (None = every class), name_regex (default: word-bounded token)
DEFAULT_COMPONENT_MODIFIERS: List[Dict[str, Any]] = [
    {"token": "bioavailable", "connector": "."},
    {"token": "bound", "connector": "."},
    {"token": "free", "connector": ".", "name_regex": r"\b(fr|free)\b"},
    {"token": "total", "connector": "."},
    {"token": "nucleated", "connector": ".", "classes": ["CHEM", "DRUG/TOX", "HEM/BC"]},
    {"token": "panel", "connector": " ", "classes": None},
    {"token": "trough", "connector": "^"},
    {"token": "peak", "connector": "^"},
    {"token": "post dialysis", "connector": "^"},
    {"token": "pre dialysis", "connector": "^"},
    {"token": "standard", "connector": "^^"},
]


@dataclass(frozen=True)
class ComponentModifier:
    token: str
    connector: str
    name_regex: "re.Pattern[str]"
    classes: Optional[frozenset] = None

    @property
    def modifier(self) -> str:
        return self.connector + self.token

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "ComponentModifier":
        token = str(cfg["token"])
        if cfg.get("name_regex"):
            regex = re.compile(str(cfg["name_regex"]), re.I)
        elif " " in token:
            variants = (token, token.replace(" ", "-"), token.replace(" ", ""))
            regex = re.compile(r"\b(" + "|".join(re.escape(v) for v in variants) + r")\b", re.I)
        else:
            regex = re.compile(r"\b" + re.escape(token) + r"\b", re.I)
        classes = cfg.get("classes", DEFAULT_MODIFIER_CLASSES)
        return cls(
            token=token,
            connector=str(cfg["connector"]),
            name_regex=regex,
            classes=frozenset(classes) if classes else None,
        )

    def applies_to_class(self, lab_class: str) -> bool:
        return self.classes is None or lab_class in self.classes

    def in_name(self, raw_name: str) -> bool:
        return bool(self.name_regex.search(raw_name))

    def in_component(self, component: str) -> bool:
        return component.endswith(self.modifier)


@dataclass(frozen=True)
class ComponentAdjustment:
    status: str  # blank | none | both | name | component | igx
    modifier: str = ""
    component: str = ""


_IGX_RE = re.compile(r"\b(IgA|IgE|IgG[1234]?|IgM)\b", re.I)


def extract_igx(text: str) -> Optional[str]:
    """Antibody subtype in canonical case, e.g. 'igg1' -> 'IgG1'."""
    m = _IGX_RE.search(text or "")
    if not m:
        return None
    s = m.group(1)
    return s[0].upper() + s[1].lower() + s[2].upper() + s[3:]


# -------------------------
# Parser
# -------------------------

class LabNameParser:
    """Compiled extraction rules and modifier tables, built once per batch."""

    def __init__(
        self,
        specimen_rules: Optional[Sequence[Mapping[str, Any]]] = None,
        time_rules: Optional[Sequence[Mapping[str, Any]]] = None,
        default_specimens: Optional[Mapping[str, str]] = None,
        component_modifiers: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> None:
        self.specimen_rules: List[ExtractionRule] = compile_rules(
            "SYSTEM", DEFAULT_SPECIMEN_RULES if specimen_rules is None else specimen_rules
        )
        self.time_rules: List[ExtractionRule] = compile_rules(
            "TIME", DEFAULT_TIME_RULES if time_rules is None else time_rules
        )
        self.default_specimens: Dict[str, str] = dict(
            DEFAULT_SPECIMEN_BY_CLASS if default_specimens is None else default_specimens
        )
        self.component_modifiers: List[ComponentModifier] = [
            ComponentModifier.from_config(cfg)
            for cfg in (DEFAULT_COMPONENT_MODIFIERS if component_modifiers is None else component_modifiers)
        ]

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "LabNameParser":
        """Rule tables from ``extraction_rules_file`` (YAML) when configured, else the defaults."""
        rules_cfg: Dict[str, Any] = {}
        path = options.get("extraction_rules_file")
        if path:
            if not os.path.exists(path):
                raise MalformedRuleError(f"Extraction rules file not found: {path}")
            with open(path, "r", encoding="utf-8") as f:
                rules_cfg = yaml.safe_load(f) or {}
            if not isinstance(rules_cfg, dict):
                raise MalformedRuleError(f"Extraction rules file must hold a mapping: {path}")
            logger.info("Loaded extraction rules from %s", path)
        return cls(
            specimen_rules=rules_cfg.get("specimen"),
            time_rules=rules_cfg.get("time"),
            default_specimens=options.get("default_specimens") or rules_cfg.get("default_specimens"),
            component_modifiers=rules_cfg.get("component_modifiers"),
        )

    def extract_specimen(self, raw_name: str, lab_class: str = "") -> List[ExtractionResult]:
        return run_extractors(raw_name, self.specimen_rules, lab_class)

    def extract_time(self, text: str, selector: Optional[str] = None, lab_class: str = "") -> List[ExtractionResult]:
        return run_extractors(text, self.time_rules, lab_class, selector)

    def default_specimen(self, lab_class: str) -> str:
        return self.default_specimens.get(lab_class, "")

    def adjusted_component(self, raw_name: str, component: str, lab_class: str) -> ComponentAdjustment:
        """
        Balance connector-joined qualifiers between the raw name and the mapped component:
        present only in the name -> append; present only in the component -> strip.
        The first applicable modifier decides. Falls back to the antibody-subtype check.
        """
        if not raw_name or not component:
            return ComponentAdjustment(status="blank")

        status = "none"
        for m in self.component_modifiers:
            if not m.applies_to_class(lab_class):
                continue
            in_name, in_comp = m.in_name(raw_name), m.in_component(component)
            if in_name and not in_comp:
                return ComponentAdjustment("name", m.modifier, component + m.modifier)
            if in_comp and not in_name:
                return ComponentAdjustment("component", m.modifier, component[: -len(m.modifier)])
            if in_name and in_comp:
                status = "both"
                break

        igx_name, igx_comp = extract_igx(raw_name), extract_igx(component)
        if igx_name and igx_comp and igx_name != igx_comp:
            m = _IGX_RE.search(component)
            assert m is not None
            return ComponentAdjustment("igx", "IgX", component[: m.start()] + igx_name + component[m.end():])
        return ComponentAdjustment(status=status)
