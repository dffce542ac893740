"""
The health check policies as seen by the controller.

The raw ``MachineHealthCheck`` objects are parsed into immutable structures
once per reconciliation, so that the rest of the logic does not dig into
the raw dicts and does not repeat the same validation over and over.
"""
import dataclasses
import re
from typing import Any, Mapping, Optional, Tuple, Union

from machinehealth.structs import bodies, dicts, references

CLUSTER_NAME_LABEL = 'cluster.x-k8s.io/cluster-name'
PAUSED_ANNOTATION = 'cluster.x-k8s.io/paused'

_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'μs': 1e-6,
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}
_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)')


class PolicyError(ValueError):
    """ Raised when a health check policy cannot be interpreted. """


@dataclasses.dataclass(frozen=True)
class UnhealthyCondition:
    """
    A rule: a node is unhealthy if its condition of this type has had
    this status for at least this long (in seconds).
    """
    type: str
    status: str
    timeout: float


@dataclasses.dataclass(frozen=True)
class HealthCheckSpec:
    cluster_name: str
    selector: Mapping[str, Any]
    unhealthy_conditions: Tuple[UnhealthyCondition, ...]
    node_startup_timeout: float


def parse_duration(value: Union[None, str, int, float]) -> float:
    """
    Parse a duration as rendered by Kubernetes into seconds.

    The durations are in the "72h3m0.5s" format. The plain numbers
    are accepted too and are interpreted as seconds.
    """
    if isinstance(value, bool) or value is None:
        raise PolicyError(f"A duration is expected, got {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise PolicyError(f"Durations cannot be negative: {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise PolicyError(f"A duration is expected, got {value!r}")

    text = value.strip()
    sign = -1.0 if text.startswith('-') else 1.0
    text = text.lstrip('+-')
    if text == '0':
        return 0.0
    if not text:
        raise PolicyError(f"Empty duration: {value!r}")

    total = 0.0
    position = 0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None:
            raise PolicyError(f"Invalid duration: {value!r}")
        number, unit = match.groups()
        total += float(number) * _DURATION_UNITS[unit]
        position = match.end()

    if sign < 0 and total > 0:
        raise PolicyError(f"Durations cannot be negative: {value!r}")
    return total


def parse_spec(
        body: bodies.RawBody,
        *,
        default_node_startup_timeout: float,
) -> HealthCheckSpec:
    spec = body.get('spec')
    if not isinstance(spec, Mapping):
        raise PolicyError("The health check has no spec.")

    cluster_name = spec.get('clusterName')
    if not cluster_name or not isinstance(cluster_name, str):
        raise PolicyError("The health check has no spec.clusterName.")

    selector = spec.get('selector') or {}
    if not isinstance(selector, Mapping):
        raise PolicyError(f"The spec.selector is not a mapping: {selector!r}")

    raw_conditions = spec.get('unhealthyConditions') or []
    if not isinstance(raw_conditions, list):
        raise PolicyError(f"The spec.unhealthyConditions is not a list: {raw_conditions!r}")
    conditions = []
    for raw_condition in raw_conditions:
        if not isinstance(raw_condition, Mapping):
            raise PolicyError(f"An unhealthy condition is not a mapping: {raw_condition!r}")
        type_ = raw_condition.get('type')
        status = raw_condition.get('status')
        if not type_ or not status:
            raise PolicyError(f"An unhealthy condition needs a type & a status: {raw_condition!r}")
        timeout = parse_duration(raw_condition.get('timeout'))
        conditions.append(UnhealthyCondition(type=str(type_), status=str(status), timeout=timeout))

    raw_startup_timeout = spec.get('nodeStartupTimeout')
    if raw_startup_timeout is None:
        node_startup_timeout = default_node_startup_timeout
    else:
        node_startup_timeout = parse_duration(raw_startup_timeout)

    return HealthCheckSpec(
        cluster_name=cluster_name,
        selector=selector,
        unhealthy_conditions=tuple(conditions),
        node_startup_timeout=node_startup_timeout,
    )


def get_cluster_key(body: bodies.RawBody) -> Optional[references.ObjectKey]:
    """
    Identify the cluster of a policy or a machine, if it is specified at all.

    Both kinds keep the cluster's name in ``spec.clusterName``, and the cluster
    is always in the same namespace as the object referring to it.
    """
    namespace = dicts.resolve(body, 'metadata.namespace', None)
    cluster_name = dicts.resolve(body, 'spec.clusterName', None)
    if not cluster_name or not isinstance(cluster_name, str):
        return None
    return references.ObjectKey(namespace, cluster_name)


def is_paused(cluster: bodies.RawBody, obj: bodies.RawBody) -> bool:
    """
    Check if the cluster is paused, or the object is paused individually.
    """
    return (dicts.resolve(cluster, 'spec.paused', False) is True or
            PAUSED_ANNOTATION in bodies.get_annotations(obj))
