from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Union

from loincfix.kb.parts import check_part_type

RULE_KINDS = ("pattern", "duration")


class MalformedRuleError(ValueError):
    """Raised at rule-load time; no record is processed with a broken rule set."""
    pass


@dataclass(frozen=True)
class ExtractionResult:
    part_type: str
    value: str
    pattern: str
    selector: Optional[str] = None


@dataclass(frozen=True)
class ExtractionRule:
    """
    One compiled rule. ``extract`` yields the part value when the rule applies to the
    record's class, the ``unless`` regex does not match, and the pattern matches.
    """

    part_type: str
    kind: str
    regex: "re.Pattern[str]"
    part_name: str
    pattern: str
    selector: Optional[str] = None
    classes_incl: Optional[FrozenSet[str]] = None
    classes_excl: Optional[FrozenSet[str]] = None
    unless: Optional["re.Pattern[str]"] = None

    def applies_to_class(self, lab_class: str) -> bool:
        if self.classes_incl is not None and lab_class not in self.classes_incl:
            return False
        if self.classes_excl is not None and lab_class in self.classes_excl:
            return False
        return True

    def extract(self, text: Any, lab_class: str = "") -> Optional[str]:
        text = "" if text is None else str(text)
        if not text:
            return None
        if not self.applies_to_class(lab_class):
            return None
        if self.unless is not None and self.unless.search(text):
            return None
        m = self.regex.search(text)
        if not m:
            return None
        if self.kind == "duration":
            return f"{m.group(1)}H"
        return self.part_name


def _as_list(value: Union[str, Sequence[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def compile_rule(part_type: str, config: Mapping[str, Any]) -> ExtractionRule:
    """
    Build a rule from a config entry.

    Keys: pattern (str or list, literal, case-insensitive, word-bounded), regex,
    part_name (defaults to a single-string pattern), kind (pattern|duration),
    classes (inclusive list, or exclusive with a '!' prefix on every entry),
    unless (regex), selector (RAW_LAB_NAME|RAW_UNIT).
    """
    check_part_type(part_type)
    kind = str(config.get("kind", "pattern"))
    if kind not in RULE_KINDS:
        raise MalformedRuleError(f"Unknown {part_type} rule kind {kind!r}: {dict(config)}")

    pattern = config.get("pattern")
    regex_src = config.get("regex")
    part_name = config.get("part_name")
    if not pattern and not regex_src:
        raise MalformedRuleError(f"At least one of pattern or regex must be specified for {part_type} rule: {dict(config)}")
    if kind == "pattern" and not part_name and not isinstance(pattern, str):
        raise MalformedRuleError(f"At least one of pattern or part_name must be specified for {part_type} rule: {dict(config)}")
    if kind == "duration" and not regex_src:
        raise MalformedRuleError(f"A duration rule needs a regex with a number group: {dict(config)}")

    try:
        if regex_src:
            regex = re.compile(str(regex_src), re.I)
        else:
            alternatives = "|".join(re.escape(p) for p in _as_list(pattern))
            regex = re.compile(r"\b(" + alternatives + r")\b", re.I)
        unless = re.compile(str(config["unless"]), re.I) if config.get("unless") else None
    except re.error as e:
        raise MalformedRuleError(f"Invalid regex in {part_type} rule {dict(config)}: {e}") from e
    if kind == "duration" and regex.groups < 1:
        raise MalformedRuleError(f"A duration rule regex has no capture group for the hours: {dict(config)}")

    classes = _as_list(config.get("classes"))
    excl = [c for c in classes if c.startswith("!")]
    if excl and len(excl) != len(classes):
        raise MalformedRuleError(f"Class filter mixes inclusive and exclusive entries: {classes}")

    pattern_label = ", ".join(_as_list(pattern)) if pattern else regex.pattern
    return ExtractionRule(
        part_type=part_type,
        kind=kind,
        regex=regex,
        part_name=str(part_name or (pattern if isinstance(pattern, str) else "")),
        pattern=pattern_label,
        selector=config.get("selector"),
        classes_incl=frozenset(classes) if classes and not excl else None,
        classes_excl=frozenset(c[1:].strip() for c in excl) if excl else None,
        unless=unless,
    )


def compile_rules(part_type: str, configs: Iterable[Mapping[str, Any]]) -> List[ExtractionRule]:
    return [compile_rule(part_type, cfg) for cfg in configs]


def run_extractors(
    text: Any,
    rules: Sequence[ExtractionRule],
    lab_class: str = "",
    selectors: Union[str, Sequence[str], None] = None,
) -> List[ExtractionResult]:
    """
    Evaluate every rule (restricted to ``selectors`` when given) and return all hits in
    rule order. Two rules yielding the same value both appear.
    """
    wanted = _as_list(selectors) or None
    out: List[ExtractionResult] = []
    if text is None or str(text) == "":
        return out
    for rule in rules:
        if wanted is not None and rule.selector not in wanted:
            continue
        value = rule.extract(text, lab_class)
        if value:
            out.append(
                ExtractionResult(
                    part_type=rule.part_type,
                    value=value,
                    pattern=rule.pattern,
                    selector=", ".join(wanted) if wanted else None,
                )
            )
    return out
