"""
Routing of the object changes to the health checks to be reconciled.

The changes of clusters, machines, and nodes do not trigger anything
on their own: instead, they are translated into the health checks whose
verdicts might be affected by them, and those health checks are reconciled.

The routing is read-only against the caches and never fails: the objects
of unexpected kinds or with missing identities are logged and are routed
nowhere. The data inconsistencies (e.g. a node claimed by several machines)
are logged and routed nowhere too: the next change will fix it or not.
"""
import dataclasses
import logging
from typing import List, Optional, Union

from machinehealth.reactor import caching, indexing, queueing
from machinehealth.structs import bodies, dicts, references, selectors

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ClusterChange:
    body: bodies.RawBody


@dataclasses.dataclass(frozen=True)
class MachineChange:
    body: bodies.RawBody


@dataclasses.dataclass(frozen=True)
class NodeChange:
    body: bodies.RawBody
    cluster: Optional[references.ObjectKey] = None  # the target cluster the node belongs to


Change = Union[ClusterChange, MachineChange, NodeChange]


def route(
        change: Change,
        *,
        cache: caching.Cache,
) -> List[references.ObjectKey]:
    if isinstance(change, ClusterChange):
        return cluster_to_policies(change.body, cache=cache)
    elif isinstance(change, MachineChange):
        return machine_to_policies(change.body, cache=cache)
    elif isinstance(change, NodeChange):
        return node_to_policies(change.body, cache=cache, cluster=change.cluster)
    else:
        logger.error(f"Unsupported change to route: {change!r}")
        return []


def enqueue(
        change: Change,
        *,
        cache: caching.Cache,
        queue: queueing.ReconcileQueue,
) -> None:
    """
    Route the change and request the reconciliation of the affected health checks.

    It does not wait for the reconciliation: the requests are only queued.
    """
    for key in route(change, cache=cache):
        queue.add(key)


def cluster_to_policies(
        body: bodies.RawBody,
        *,
        cache: caching.Cache,
) -> List[references.ObjectKey]:
    key = _get_typed_key(body, references.CLUSTERS)
    if key is None:
        return []

    policies = cache.list_objs(references.MACHINEHEALTHCHECKS,
                               namespace=key.namespace,
                               matching_fields={indexing.POLICY_CLUSTER_NAME_INDEX: key.name})
    return [bodies.get_key(policy) for policy in policies]


def machine_to_policies(
        body: bodies.RawBody,
        *,
        cache: caching.Cache,
) -> List[references.ObjectKey]:
    key = _get_typed_key(body, references.MACHINES)
    if key is None:
        return []

    cluster_name = dicts.resolve(body, 'spec.clusterName', None)
    if not cluster_name or not isinstance(cluster_name, str):
        logger.debug(f"The machine {key} has no cluster name. Routing nowhere.")
        return []

    policies = cache.list_objs(references.MACHINEHEALTHCHECKS,
                               namespace=key.namespace,
                               matching_fields={indexing.POLICY_CLUSTER_NAME_INDEX: cluster_name})
    return [bodies.get_key(policy)
            for policy in policies
            if selectors.has_matching_labels(dicts.resolve(policy, 'spec.selector', None), body)]


def node_to_policies(
        body: bodies.RawBody,
        *,
        cache: caching.Cache,
        cluster: Optional[references.ObjectKey] = None,
) -> List[references.ObjectKey]:
    key = _get_typed_key(body, references.NODES)
    if key is None:
        return []

    machine = get_machine_of_node(key.name, cache=cache, cluster=cluster)
    if machine is None:
        return []
    return machine_to_policies(machine, cache=cache)


def get_machine_of_node(
        node_name: str,
        *,
        cache: caching.Cache,
        cluster: Optional[references.ObjectKey] = None,
) -> Optional[bodies.RawBody]:
    """
    Find the only machine that owns the node, or nothing if it is ambiguous.

    If the node's cluster is known, only that cluster's machines are considered,
    so that the same-named nodes of different clusters are not confused.
    """
    machines = cache.list_objs(references.MACHINES,
                               matching_fields={indexing.MACHINE_NODE_NAME_INDEX: node_name})
    if cluster is not None:
        machines = [machine for machine in machines
                    if dicts.resolve(machine, 'metadata.namespace', None) == cluster.namespace
                    if dicts.resolve(machine, 'spec.clusterName', None) == cluster.name]
    if len(machines) != 1:
        logger.error(f"Expected exactly one machine for the node {node_name!r}, "
                     f"found {len(machines)}. Routing nowhere.")
        return None
    return machines[0]


def _get_typed_key(
        body: bodies.RawBody,
        resource: references.Resource,
) -> Optional[references.ObjectKey]:
    kind = body.get('kind') if isinstance(body, dict) else None
    if kind is not None and kind != resource.kind:
        logger.error(f"Expected a {resource.kind} to route, got {kind}. Routing nowhere.")
        return None
    try:
        return bodies.get_key(body)
    except (ValueError, AttributeError, TypeError):
        logger.error(f"Expected a {resource.kind} with a name to route, got {body!r}.")
        return None
