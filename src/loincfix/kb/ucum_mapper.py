from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from loincfix.kb.unit_store import UnitMappingStore

logger = logging.getLogger(__name__)

# (unit, case_insensitive, loinc) -> mapped unit or None
UnitMapperFn = Callable[[str, bool, str], Optional[str]]
PartsLookup = Callable[[str], Optional[Mapping[str, str]]]


@dataclass(frozen=True)
class UnitMapping:
    status: str  # missing | invalid | <mapper name>[-ci]
    ucum: str = ""


_DENOM_LITRE_RE = re.compile(r"/([umdc]?)l\b")


def normalize_ucum(ucum: str) -> str:
    """Upper-case the litre in a denominator, e.g. mg/ml -> mg/mL."""
    return _DENOM_LITRE_RE.sub(r"/\1L", ucum, count=1) if ucum else ucum


# -------------------------
# Regex mapper
# -------------------------

_DAY_RE = re.compile(r"^(.*)\bday\b(.*)$", re.I)
_DOT_HOUR_RE = re.compile(r"^([^\d]*)(\d+)([ ]*(h|hr|hour)[sS]?\b)(.*)$", re.I)
_HOUR_RE = re.compile(r"^(.*)((HR|Hr|hr|HOUR|Hour|hour)[sS]?)(.*)$", re.I)


def regex_map(unit: str) -> Optional[str]:
    """Spelling fixes for time denominators, e.g. 'mg/24 hr' -> 'mg/(24.h)', 'mg/day' -> 'mg/(24.h)'."""
    result = None
    if _DAY_RE.match(unit):
        result = _DAY_RE.sub(r"\1(24.h)\2", unit)
    elif _DOT_HOUR_RE.match(unit):
        result = _DOT_HOUR_RE.sub(r"\1(\2.h)\5", unit)
    elif _HOUR_RE.match(unit):
        result = _HOUR_RE.sub(r"\1h\4", unit)

    if not result and " " in unit:
        result = regex_map(unit.replace(" ", ""))
    return result


# -------------------------
# Rule-based correction table
# -------------------------

RULE_FIELDS = ("CLASS", "COMPONENT", "PROPERTY", "NOT_PROPERTY")

# First matching rule wins. Part values are compared upper-cased.
DEFAULT_UNIT_RULES: List[Dict[str, object]] = [
    {"UNIT": ["kU/L", "kAU/L"], "CLASS": ["ALLERGY"], "MAP_TO": "k[IU]/L"},
    {"UNIT": ["U/mL", "AU/mL", "AU"], "CLASS": ["ALLERGY"], "MAP_TO": "[IU]/mL"},
    {"UNIT": ["%"], "CLASS": ["CHEM"], "COMPONENT": ["ACETONE", "METHANOL", "ETHANOL", "ISOPROPANOL"],
     "MAP_TO": "dL/mL"},
    {"UNIT": ["IU/L", "[IU]/L", "UNITS/L", "Units/L", "units/L"], "CLASS": ["CHEM"], "PROPERTY": ["CCnc"],
     "MAP_TO": "U/L"},
    {"UNIT": ["Units", "IU", "[IU]"], "CLASS": ["CHEM"], "PROPERTY": ["ACnc"], "MAP_TO": "[arb'U]"},
    {"UNIT": ["Units/mL", "[IU]/mL"], "CLASS": ["CHEM"], "PROPERTY": ["ACnc"], "MAP_TO": "[arb'U]/mL"},
    {"UNIT": ["IU", "IU/mL", "U/mL", "U", "units/mL"], "CLASS": ["SERO"], "MAP_TO": "[arb'U]/mL",
     "disabled": True},
    {"UNIT": ["IU/mL", "[IU]/mL"], "CLASS": ["CHEM"], "PROPERTY": ["CCnc"], "MAP_TO": "U/mL"},
    {"UNIT": ["nmol/h/mg{protein}", "U/g{Hb}", "U/g Hb", "nmol/min/mg protein", "U/g Hb}",
              "nmol/min/mg{protein}", "mU/g{Hb}", "nmol/h/mg Hb", "IU/g", "[IU]/g"],
     "CLASS": ["CHEM"], "PROPERTY": ["CCnt"], "MAP_TO": "U/g"},
    {"UNIT": ["Ug/24h", "ug/72h"], "CLASS": ["CHEM"], "PROPERTY": ["MRat"], "MAP_TO": "ug/(24.h)"},
    {"UNIT": ["U/mL", "m[IU]/L", "u[IU]/ml", "mU/L", "uU/ML"], "CLASS": ["CHEM"], "NOT_PROPERTY": ["CCnc"],
     "MAP_TO": "[arb'U]/mL", "disabled": True},
    {"UNIT": ["nd/dL"], "CLASS": ["CHEM"], "COMPONENT": ["Progesterone"], "MAP_TO": "ng/dL"},
    {"UNIT": ["AU", "AU/ml", "Index val", "APL U/mL", "MPS ISA", "ARU", "SGU", "Bethesda", "EU/dL",
              "E.U/dL", "GPL u/mL", "GPS IgM", "MPL U/mL", "MPS IgM", "{index_val}", "IV"],
     "CLASS": ["CHEM", "SERO"], "MAP_TO": "[arb'U]/mL"},
    {"UNIT": ["K/uL"], "CLASS": ["HEM/BC"], "PROPERTY": ["NCnc"], "MAP_TO": "10*3/uL"},
    {"UNIT": ["mm"], "CLASS": ["HEM/BC"], "PROPERTY": ["Vel"], "MAP_TO": "mm/h"},
    {"UNIT": ["[IU]/g{Hb}", "IU/g{Hb}", "U/g{Hb}"], "CLASS": ["CHEM"], "PROPERTY": ["CCnt"],
     "MAP_TO": "nmol/min/mg{protein}"},
    {"UNIT": ["Ehrlich units", "EU", "[EU]", "{Ehrlich’U}"], "CLASS": ["CHEM"], "COMPONENT": ["Urobilinogen"],
     "MAP_TO": "mg/dL,[EU]"},
    {"UNIT": ["{Log_copies}/mL", "log", "log copies"], "CLASS": ["MICRO"], "PROPERTY": ["LnCnc"],
     "MAP_TO": "{log copies}/mL"},
    {"UNIT": ["#/HPF", "{#}/HPF", "/HPF", "/hpf", "/ hpf"], "CLASS": ["UA"], "PROPERTY": ["Naric"],
     "MAP_TO": "/[HPF]"},
    {"UNIT": ["#/LPF", "{#}/LPF", "/lpf"], "CLASS": ["UA"], "PROPERTY": ["Naric"], "MAP_TO": "/[LPF]"},
    {"UNIT": ["U/mL"], "CLASS": ["COAG", "SERO", "CHEM", "MICRO", "HEM/BC"], "MAP_TO": "[arb'U]/mL"},
]

_HARD_DOT_HOUR_RE = re.compile(r"^([^\d]*)(\d+)([ ]*(HR|Hr|hr|HOUR|Hour|hour)[sS]?)(.*)$")
_HARD_HOUR_RE = re.compile(r"^(.*)((HR|Hr|hr|HOUR|Hour|hour)[sS]?)(.*)$")


def _hard_mapping(unit: str) -> Optional[str]:
    result = None
    if _HARD_DOT_HOUR_RE.match(unit):
        result = _HARD_DOT_HOUR_RE.sub(r"\1(\2.h)\5", unit)
    elif _HARD_HOUR_RE.match(unit):
        result = _HARD_HOUR_RE.sub(r"\1h\4", unit)
    if not result and " " in unit:
        no_space = unit.replace(" ", "")
        result = _hard_mapping(no_space) or no_space
    return result


@dataclass(frozen=True)
class UnitRule:
    units: frozenset
    units_ci: frozenset
    conditions: Mapping[str, frozenset]
    map_to: str
    disabled: bool = False

    @classmethod
    def from_config(cls, cfg: Mapping[str, object]) -> "UnitRule":
        units = [str(u) for u in cfg["UNIT"]]  # type: ignore[union-attr]
        conditions = {
            f: frozenset(str(v).upper() for v in cfg[f])  # type: ignore[union-attr]
            for f in RULE_FIELDS
            if cfg.get(f)
        }
        return cls(
            units=frozenset(units),
            units_ci=frozenset(u.upper() for u in units),
            conditions=conditions,
            map_to=str(cfg["MAP_TO"]),
            disabled=bool(cfg.get("disabled", False)),
        )

    def applies(self, unit: str, parts: Mapping[str, str], case_insensitive: bool) -> bool:
        if (unit.upper() not in self.units_ci) if case_insensitive else (unit not in self.units):
            return False
        for field, allowed in self.conditions.items():
            if field.startswith("NOT_"):
                value = (parts.get(field[4:]) or "").upper()
                if value and value in allowed:
                    return False
            else:
                value = (parts.get(field) or "").upper()
                if not value or value not in allowed:
                    return False
        return True


class RuleBasedUnitMapper:
    """Unit corrections conditioned on the parts of the LOINC the unit was reported with."""

    def __init__(self, get_parts: PartsLookup, rules: Optional[Sequence[Mapping[str, object]]] = None) -> None:
        self._get_parts = get_parts
        self._rules = [UnitRule.from_config(r) for r in (DEFAULT_UNIT_RULES if rules is None else rules)]

    def __call__(self, unit: str, case_insensitive: bool, loinc: str) -> Optional[str]:
        parts = self._get_parts(loinc) if loinc else None
        if parts is None:
            logger.debug("rule-based unit mapping skipped, unknown LOINC: %r", loinc)
            return None
        alt = None
        for rule in self._rules:
            if rule.disabled:
                continue
            if rule.applies(unit, parts, case_insensitive):
                alt = rule.map_to
                break
        if alt is None:
            alt = _hard_mapping(unit)
        return alt if alt and alt != unit else None


# -------------------------
# Manager
# -------------------------

class UcumMapperManager:
    """
    Named unit-to-UCUM mappers tried in registration order:
      - map_direct: unit-to-ucum table
      - map_unit_prop: unit-ucum-properties table
      - map_regex: time-denominator spelling fixes
      - map_rule_based: LOINC-part conditioned corrections (only with a parts lookup)
    """

    def __init__(self, units: UnitMappingStore, get_parts: Optional[PartsLookup] = None) -> None:
        self.registry: Dict[str, UnitMapperFn] = {
            "map_direct": lambda unit, ci, loinc: units.direct_ucum(unit, ci),
            "map_unit_prop": lambda unit, ci, loinc: units.unit_prop_ucum(unit, ci),
            "map_regex": lambda unit, ci, loinc: regex_map(unit),
        }
        if get_parts is not None:
            self.registry["map_rule_based"] = RuleBasedUnitMapper(get_parts)

    def register_mapper(self, name: str, mapper: UnitMapperFn) -> None:
        self.registry[name] = mapper

    def mapper_names(self) -> List[str]:
        return list(self.registry)

    def map_with(
        self,
        mappers: Iterable[str] | str,
        unit: str,
        case_insensitive: bool = False,
        loinc: str = "",
    ) -> UnitMapping:
        names = [mappers] if isinstance(mappers, str) else list(mappers)
        if not unit:
            return UnitMapping(status="missing")
        for name in names:
            alt = self.registry[name](unit, case_insensitive, loinc)
            if not alt:
                continue
            status = f"{name}-ci" if case_insensitive else name
            return UnitMapping(status=status, ucum=normalize_ucum(alt))
        return UnitMapping(status="invalid")

    def map_to_ucum(self, unit: str, case_insensitive: bool = False, loinc: str = "") -> UnitMapping:
        return self.map_with(self.mapper_names(), unit, case_insensitive=case_insensitive, loinc=loinc)

    def convert(self, unit: str, loinc: str = "") -> str:
        """Best single conversion: case-sensitive first, then case-insensitive, '' if none."""
        if not unit:
            return ""
        return self.map_to_ucum(unit, loinc=loinc).ucum or self.map_to_ucum(unit, True, loinc).ucum

    def unit_forms(self, unit: str, loinc: str = "") -> List[str]:
        """The unit plus every spelling any mapper produces for it, in either case mode."""
        forms: List[str] = []
        if not unit:
            return forms
        forms.append(unit)
        for name in self.mapper_names():
            for ci in (False, True):
                mapped = self.map_with(name, unit, case_insensitive=ci, loinc=loinc)
                if mapped.ucum and mapped.ucum not in forms:
                    forms.append(mapped.ucum)
        return forms


_IU_RE = re.compile(r"\bIU\b")
_ENZYME_NAME_RE = re.compile(r".*ase\b", re.I)


def transform_raw_unit(raw_unit: str, raw_name: str) -> str:
    """Context fixes before mapping: IU -> U for enzymes, trailing ' Cr' dropped."""
    unit = raw_unit or ""
    if not unit:
        return unit
    if _IU_RE.search(unit) and _ENZYME_NAME_RE.search(raw_name or ""):
        return _IU_RE.sub("U", unit, count=1)
    if unit.endswith(" Cr"):
        return unit[:-3].strip()
    return unit
