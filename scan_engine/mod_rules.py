"""
Moderation rules

Administrator rules are stored as JSON condition trees and parsed into a
closed set of predicate variants. Rules are evaluated in order and the first
match decides: Approve (no change), Hold (review) or Block.

Condition syntax::

    {"type": "tag", "value": "realistic"}
    {"type": "tags_any", "values": ["a", "b"]}
    {"type": "tags_all", "values": ["a", "b"]}
    {"type": "text_contains", "field": "prompt", "value": "castle"}
    {"type": "text_matches", "field": "prompt", "pattern": "^castle"}
    {"type": "all", "conditions": [...]}
    {"type": "any", "conditions": [...]}
    {"type": "not", "condition": {...}}
"""

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Pattern, Tuple

from .errors import RuleEvaluationError
from .models import ModerationRuleAction

logger = logging.getLogger(__name__)


class PredicateKind(str, enum.Enum):
    TAG = "tag"
    TAGS_ANY = "tags_any"
    TAGS_ALL = "tags_all"
    TEXT_CONTAINS = "text_contains"
    TEXT_MATCHES = "text_matches"
    ALL = "all"
    ANY = "any"
    NOT = "not"


@dataclass(frozen=True)
class Predicate:
    kind: PredicateKind
    values: Tuple[str, ...] = ()
    field: Optional[str] = None
    pattern: Optional[Pattern] = None
    children: Tuple["Predicate", ...] = ()


@dataclass
class RuleSubject:
    """What a rule can see: tag names and free-text fields of one media item"""
    tags: FrozenSet[str]
    fields: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_media(cls, tag_names: Iterable[str], meta: Optional[Dict[str, Any]], metadata: Optional[Dict[str, Any]]):
        fields = {}
        for source in (metadata or {}, meta or {}):
            for key, value in source.items():
                if isinstance(value, str):
                    fields[key] = value
        return cls(tags=frozenset(tag_names), fields=fields)


@dataclass
class CompiledRule:
    id: Optional[int]
    name: Optional[str]
    action: ModerationRuleAction
    reason: Optional[str]
    predicate: Predicate


@dataclass
class RuleVerdict:
    rule_id: Optional[int]
    action: ModerationRuleAction
    reason: Optional[str] = None


def _string_list(definition: Dict[str, Any], key: str) -> Tuple[str, ...]:
    values = definition.get(key)
    if not isinstance(values, list) or not values or not all(isinstance(v, str) for v in values):
        raise ValueError(f"'{key}' must be a non-empty list of strings")
    return tuple(v.lower().strip() for v in values)


def _string(definition: Dict[str, Any], key: str) -> str:
    value = definition.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"'{key}' must be a non-empty string")
    return value


def parse_condition(definition: Any) -> Predicate:
    """Parse a JSON condition tree, raising ValueError on anything unknown"""
    if not isinstance(definition, dict):
        raise ValueError("condition must be an object")
    try:
        kind = PredicateKind(definition.get("type"))
    except ValueError:
        raise ValueError(f"unknown condition type: {definition.get('type')!r}")

    if kind == PredicateKind.TAG:
        return Predicate(kind, values=(_string(definition, "value").lower().strip(),))
    if kind in (PredicateKind.TAGS_ANY, PredicateKind.TAGS_ALL):
        return Predicate(kind, values=_string_list(definition, "values"))
    if kind == PredicateKind.TEXT_CONTAINS:
        return Predicate(kind, field=_string(definition, "field"), values=(_string(definition, "value").lower(),))
    if kind == PredicateKind.TEXT_MATCHES:
        try:
            pattern = re.compile(_string(definition, "pattern"), re.IGNORECASE)
        except re.error as e:
            raise ValueError(f"invalid pattern: {e}")
        return Predicate(kind, field=_string(definition, "field"), pattern=pattern)
    if kind in (PredicateKind.ALL, PredicateKind.ANY):
        conditions = definition.get("conditions")
        if not isinstance(conditions, list) or not conditions:
            raise ValueError("'conditions' must be a non-empty list")
        return Predicate(kind, children=tuple(parse_condition(c) for c in conditions))
    # PredicateKind.NOT
    return Predicate(kind, children=(parse_condition(definition.get("condition")),))


def _eval_text_contains(p: Predicate, subject: RuleSubject) -> bool:
    return p.values[0] in subject.fields.get(p.field, "").lower()


def _eval_text_matches(p: Predicate, subject: RuleSubject) -> bool:
    return bool(p.pattern.search(subject.fields.get(p.field, "")))


_EVALUATORS: Dict[PredicateKind, Callable[[Predicate, RuleSubject], bool]] = {
    PredicateKind.TAG: lambda p, s: p.values[0] in s.tags,
    PredicateKind.TAGS_ANY: lambda p, s: any(v in s.tags for v in p.values),
    PredicateKind.TAGS_ALL: lambda p, s: all(v in s.tags for v in p.values),
    PredicateKind.TEXT_CONTAINS: _eval_text_contains,
    PredicateKind.TEXT_MATCHES: _eval_text_matches,
    PredicateKind.ALL: lambda p, s: all(evaluate_predicate(c, s) for c in p.children),
    PredicateKind.ANY: lambda p, s: any(evaluate_predicate(c, s) for c in p.children),
    PredicateKind.NOT: lambda p, s: not evaluate_predicate(p.children[0], s),
}


def evaluate_predicate(predicate: Predicate, subject: RuleSubject) -> bool:
    return _EVALUATORS[predicate.kind](predicate, subject)


def compile_rule(rule: Any) -> CompiledRule:
    """Compile a stored rule (ORM row or object with the same attributes)"""
    try:
        predicate = parse_condition(rule.definition)
        action = ModerationRuleAction(rule.action)
    except ValueError as e:
        raise RuleEvaluationError(f"Malformed moderation rule {rule.id}: {e}", rule_id=rule.id) from e
    return CompiledRule(id=rule.id, name=rule.name, action=action, reason=rule.reason, predicate=predicate)


class ModerationRuleEngine:
    """Ordered first-match evaluation of administrator rules"""

    def __init__(self, rules: Iterable[Any]):
        self.rules: List[CompiledRule] = []
        for rule in rules:
            try:
                self.rules.append(compile_rule(rule))
            except RuleEvaluationError as e:
                logger.error(e.message, extra={"rule_id": e.rule_id})

    def evaluate(self, subject: RuleSubject) -> Optional[RuleVerdict]:
        for rule in self.rules:
            try:
                matched = evaluate_predicate(rule.predicate, subject)
            except Exception as e:
                # Evaluation failures skip the rule like parse failures do
                logger.error(f"Moderation rule {rule.id} failed: {e}", extra={"rule_id": rule.id}, exc_info=True)
                continue
            if matched:
                logger.info(f"Moderation rule {rule.id} matched: {rule.action.value}")
                return RuleVerdict(rule_id=rule.id, action=rule.action, reason=rule.reason)
        return None
