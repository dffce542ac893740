"""
Resolution of the machines (and their nodes) governed by a health check.
"""
import dataclasses
import logging
from typing import Callable, List, Optional

from machinehealth.reactor import caching
from machinehealth.structs import bodies, dicts, policies, references, selectors

logger = logging.getLogger(__name__)

NodeGetter = Callable[[str], Optional[bodies.RawBody]]


@dataclasses.dataclass(frozen=True)
class Target:
    """
    A machine under a health check, with its node if the node is known.
    """
    policy: references.ObjectKey
    machine: bodies.RawBody
    node: Optional[bodies.RawBody] = None

    def __str__(self) -> str:
        machine_name = dicts.resolve(self.machine, 'metadata.name', '')
        node_name = dicts.resolve(self.node, 'metadata.name', '') if self.node else ''
        return f'{self.policy}/{machine_name}/{node_name}'

    @property
    def machine_name(self) -> str:
        return str(dicts.resolve(self.machine, 'metadata.name', ''))

    @property
    def node_name(self) -> Optional[str]:
        node_name = dicts.resolve(self.machine, 'status.nodeRef.name', None)
        return node_name if node_name and isinstance(node_name, str) else None


def resolve_targets(
        *,
        cache: caching.Cache,
        nodes: NodeGetter,
        cluster: bodies.RawBody,
        policy: bodies.RawBody,
        spec: policies.HealthCheckSpec,
) -> List[Target]:
    """
    Find all the machines of the policy's cluster selected by the policy.

    The nodes are taken from the target cluster's cache. The machines
    with no node reference yet, or referring to the nodes not (yet) seen
    in the target cluster, are returned without nodes.
    """
    policy_key = bodies.get_key(policy)
    cluster_key = bodies.get_key(cluster)
    try:
        selector = selectors.parse_selector(spec.selector)
    except selectors.SelectorError as e:
        logger.error(f"Unable to evaluate the label selector of {policy_key}: {e}")
        return []

    targets: List[Target] = []
    machines = cache.list_objs(references.MACHINES, namespace=policy_key.namespace)
    for machine in machines:
        if dicts.resolve(machine, 'spec.clusterName', None) != cluster_key.name:
            continue
        if not selector.matches(bodies.get_labels(machine)):
            continue

        node: Optional[bodies.RawBody] = None
        node_name = dicts.resolve(machine, 'status.nodeRef.name', None)
        if node_name and isinstance(node_name, str):
            node = nodes(node_name)
            if node is None:
                logger.debug(f"The node {node_name!r} of {bodies.get_key(machine)} "
                             f"is not seen in {cluster_key} yet.")

        targets.append(Target(policy=policy_key, machine=machine, node=node))

    return sorted(targets, key=lambda target: target.machine_name)
