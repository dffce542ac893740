"""
Secondary indexes for the cross-object lookups.

* The health checks by the name of the cluster they watch (``spec.clusterName``):
  to find the health checks affected by a changed cluster or machine.
* The machines by the name of their node (``status.nodeRef.name``):
  to find the machine of a changed node in a target cluster.

The index functions never fail: the objects of unexpected kinds,
or with the fields absent, are logged and are not indexed at all.
"""
import logging
from typing import List

from machinehealth.reactor import caching
from machinehealth.structs import bodies, dicts, references

logger = logging.getLogger(__name__)

POLICY_CLUSTER_NAME_INDEX = 'spec.clusterName'
MACHINE_NODE_NAME_INDEX = 'status.nodeRef.name'


def index_policy_by_cluster_name(body: bodies.RawBody) -> List[str]:
    kind = body.get('kind')
    if kind is not None and kind != references.MACHINEHEALTHCHECKS.kind:
        logger.error(f"Expected a {references.MACHINEHEALTHCHECKS.kind} to index, got {kind}.")
        return []
    cluster_name = dicts.resolve(body, 'spec.clusterName', None)
    if not cluster_name or not isinstance(cluster_name, str):
        return []
    return [cluster_name]


def index_machine_by_node_name(body: bodies.RawBody) -> List[str]:
    kind = body.get('kind')
    if kind is not None and kind != references.MACHINES.kind:
        logger.error(f"Expected a {references.MACHINES.kind} to index, got {kind}.")
        return []
    node_name = dicts.resolve(body, 'status.nodeRef.name', None)
    if not node_name or not isinstance(node_name, str):
        return []
    return [node_name]


def register_indexes(cache: caching.Cache) -> None:
    """
    Register all the secondary indexes before the caches are populated.
    """
    cache.register_index(references.MACHINEHEALTHCHECKS, POLICY_CLUSTER_NAME_INDEX,
                         index_policy_by_cluster_name)
    cache.register_index(references.MACHINES, MACHINE_NODE_NAME_INDEX,
                         index_machine_by_node_name)
