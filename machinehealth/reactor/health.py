"""
The health evaluation of the targets.

Every target is classified as either healthy, unhealthy (i.e. needing
remediation), or not decidable yet. The latter have a time left until
they can be decided, and the health check must be re-evaluated then,
even if nothing changes in the cluster (the clock is the only change).

A target without a node is given the node startup timeout since the machine's
creation to get one. A target with a node is unhealthy if any of the node's
conditions matches any of the unhealthy rules for long enough; the rules
are checked in their order, and the first matching one decides.
"""
import dataclasses
import datetime
import enum
import logging
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

import iso8601

from machinehealth.reactor import targets
from machinehealth.structs import bodies, dicts, policies

logger = logging.getLogger(__name__)


class Verdict(str, enum.Enum):
    HEALTHY = 'healthy'
    UNHEALTHY = 'unhealthy'
    UNDECIDED = 'undecided'


@dataclasses.dataclass(frozen=True)
class Evaluation:
    healthy: Tuple[targets.Target, ...] = ()
    unhealthy: Tuple[targets.Target, ...] = ()
    next_checks: Tuple[float, ...] = ()

    @property
    def healthy_count(self) -> int:
        return len(self.healthy)

    @property
    def next_check(self) -> Optional[float]:
        return min_next_check(self.next_checks)


def check_target(
        target: targets.Target,
        *,
        spec: policies.HealthCheckSpec,
        now: datetime.datetime,
) -> Tuple[Verdict, Optional[float]]:
    """
    Classify one target; for the undecided ones, also return the time left.
    """
    if target.node is None:
        try:
            created = bodies.get_creation_time(target.machine)
        except iso8601.ParseError as e:
            logger.error(f"Target {target} has an unparseable creation time, "
                         f"treating it as just created: {e}")
            created = None
        age = (now - created).total_seconds() if created is not None else 0.0
        if age >= spec.node_startup_timeout:
            return Verdict.UNHEALTHY, None
        return Verdict.UNDECIDED, spec.node_startup_timeout - age

    conditions = dicts.resolve(target.node, 'status.conditions', None) or []
    for rule in spec.unhealthy_conditions:
        for condition in conditions:
            if not isinstance(condition, dict):
                continue
            if condition.get('type') != rule.type or condition.get('status') != rule.status:
                continue

            elapsed = _get_elapsed(condition, target=target, now=now)
            if elapsed >= rule.timeout:
                return Verdict.UNHEALTHY, None
            return Verdict.UNDECIDED, rule.timeout - elapsed

    return Verdict.HEALTHY, None


def _get_elapsed(
        condition: Mapping[str, Any],
        *,
        target: targets.Target,
        now: datetime.datetime,
) -> float:
    """ The time since the condition's last transition; a broken time is treated as now. """
    since = condition.get('lastTransitionTime')
    if not since:
        return 0.0
    try:
        return (now - bodies.parse_time(since)).total_seconds()
    except iso8601.ParseError as e:
        logger.error(f"Target {target} has an unparseable transition time of "
                     f"{condition.get('type')}, treating it as just changed: {e}")
        return 0.0


def evaluate(
        items: Iterable[targets.Target],
        *,
        spec: policies.HealthCheckSpec,
        now: datetime.datetime,
) -> Evaluation:
    healthy: List[targets.Target] = []
    unhealthy: List[targets.Target] = []
    next_checks: List[float] = []
    for target in items:
        verdict, remaining = check_target(target, spec=spec, now=now)
        logger.debug(f"Target {target} is {verdict.value}.")
        if verdict is Verdict.HEALTHY:
            healthy.append(target)
        elif verdict is Verdict.UNHEALTHY:
            unhealthy.append(target)
        elif remaining is not None:
            next_checks.append(remaining)
    return Evaluation(healthy=tuple(healthy),
                      unhealthy=tuple(unhealthy),
                      next_checks=tuple(next_checks))


def min_next_check(durations: Sequence[float]) -> Optional[float]:
    positive = [duration for duration in durations if duration > 0]
    return min(positive) if positive else None
