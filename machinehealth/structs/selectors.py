"""
Label selectors as used in the health check policies.

The selectors follow the Kubernetes set-based semantics:
``matchLabels`` are equality requirements, ``matchExpressions`` are
the ``In``/``NotIn``/``Exists``/``DoesNotExist`` requirements, all ANDed.

Unlike in Kubernetes, where an empty selector selects everything,
an empty selector here selects nothing: a health check policy with
no selector must never put the whole cluster under remediation.
"""
import dataclasses
import enum
import logging
from typing import Any, Collection, FrozenSet, List, Mapping, Optional, Tuple

from machinehealth.structs import bodies

logger = logging.getLogger(__name__)


class SelectorError(ValueError):
    """ Raised when a label selector is malformed and cannot be evaluated. """


class Operator(str, enum.Enum):
    IN = 'In'
    NOT_IN = 'NotIn'
    EXISTS = 'Exists'
    DOES_NOT_EXIST = 'DoesNotExist'


@dataclasses.dataclass(frozen=True)
class Requirement:
    key: str
    operator: Operator
    values: FrozenSet[str] = frozenset()

    def matches(self, labels: bodies.Labels) -> bool:
        if self.operator == Operator.IN:
            return self.key in labels and labels[self.key] in self.values
        elif self.operator == Operator.NOT_IN:
            return self.key not in labels or labels[self.key] not in self.values
        elif self.operator == Operator.EXISTS:
            return self.key in labels
        elif self.operator == Operator.DOES_NOT_EXIST:
            return self.key not in labels
        else:
            raise SelectorError(f"Unsupported operator: {self.operator!r}")


@dataclasses.dataclass(frozen=True)
class LabelSelector:
    requirements: Tuple[Requirement, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.requirements

    def matches(self, labels: bodies.Labels) -> bool:
        if self.empty:
            return False
        return all(requirement.matches(labels) for requirement in self.requirements)


def parse_selector(
        raw: Optional[Mapping[str, Any]],
) -> LabelSelector:
    """
    Convert a raw ``{matchLabels: ..., matchExpressions: ...}`` into a selector.

    Raises `SelectorError` if the structure is not what is expected
    (e.g. when edited manually and bypassing the schema validation).
    """
    if raw is None:
        return LabelSelector()
    if not isinstance(raw, Mapping):
        raise SelectorError(f"A selector must be a mapping, got {raw!r}")

    requirements: List[Requirement] = []

    match_labels = raw.get('matchLabels') or {}
    if not isinstance(match_labels, Mapping):
        raise SelectorError(f"The matchLabels must be a mapping, got {match_labels!r}")
    for key, value in sorted(match_labels.items()):
        if not isinstance(key, str) or not isinstance(value, str):
            raise SelectorError(f"The matchLabels must be strings, got {key!r}: {value!r}")
        requirements.append(Requirement(key, Operator.IN, frozenset([value])))

    match_expressions = raw.get('matchExpressions') or []
    if not isinstance(match_expressions, list):
        raise SelectorError(f"The matchExpressions must be a list, got {match_expressions!r}")
    for expression in match_expressions:
        requirements.append(_parse_expression(expression))

    return LabelSelector(tuple(requirements))


def _parse_expression(expression: Any) -> Requirement:
    if not isinstance(expression, Mapping):
        raise SelectorError(f"An expression must be a mapping, got {expression!r}")

    key = expression.get('key')
    if not key or not isinstance(key, str):
        raise SelectorError(f"An expression has no key: {expression!r}")

    try:
        operator = Operator(expression.get('operator'))
    except ValueError:
        raise SelectorError(f"An expression has an unknown operator: {expression!r}") from None

    values: Collection[Any] = expression.get('values') or []
    if not isinstance(values, list) or not all(isinstance(value, str) for value in values):
        raise SelectorError(f"An expression's values must be a list of strings: {expression!r}")
    if operator in (Operator.IN, Operator.NOT_IN) and not values:
        raise SelectorError(f"The {operator.value} operator requires values: {expression!r}")
    if operator in (Operator.EXISTS, Operator.DOES_NOT_EXIST) and values:
        raise SelectorError(f"The {operator.value} operator accepts no values: {expression!r}")

    return Requirement(key, operator, frozenset(values))


def has_matching_labels(
        raw_selector: Optional[Mapping[str, Any]],
        body: bodies.RawBody,
) -> bool:
    """
    Check if the object's labels are selected by the policy's raw selector.

    Empty selectors select nothing. Malformed selectors are logged and also
    select nothing: there is no way to fix them here, only to ignore them.
    """
    try:
        selector = parse_selector(raw_selector)
    except SelectorError as e:
        logger.error(f"Unable to evaluate the label selector: {e}")
        return False
    return selector.matches(bodies.get_labels(body))
