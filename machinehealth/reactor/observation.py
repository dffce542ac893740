"""
Observation of the management cluster's objects.

Every watched resource kind (health checks, clusters, machines) has its own
observer per namespace, which feeds the watch-events into the cache, and then
requests the reconciliation of the affected health checks.

The cache is updated strictly before the routing: the routing looks up
the indexes, which must already reflect the change.
"""
import logging
from typing import Callable, Optional, Set

from machinehealth.clients import watching
from machinehealth.reactor import caching, mapping, queueing
from machinehealth.structs import bodies, configuration, references

logger = logging.getLogger(__name__)

CHANGES = {
    references.CLUSTERS: mapping.ClusterChange,
    references.MACHINES: mapping.MachineChange,
}

ChangeProcessor = Callable[[references.Resource, bodies.RawBody], None]


async def resource_observer(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        cache: caching.Cache,
        processor: ChangeProcessor,
) -> None:
    """
    Keep the cache of one resource in sync with the cluster, until cancelled.

    The store is marked as synced in this namespace once the first listing
    is over (even if it was empty). After every re-listing, the objects deleted while the stream
    was disconnected are discarded and processed as the regular deletions.
    """
    store = cache[resource]
    listed: Set[references.ObjectKey] = set()
    stream = watching.infinite_watch(
        settings=settings,
        resource=resource,
        namespace=namespace,
    )
    async for raw_event in stream:

        if isinstance(raw_event, watching.Bookmark):
            if raw_event == watching.Bookmark.LISTED:
                # The store is shared by the observers of all namespaces.
                others = {key for key in store if namespace is not None and key.namespace != namespace}
                for body in store.retain(listed | others):
                    processor(resource, body)
                listed = set()
                store.mark_synced(namespace)
            continue

        body = raw_event['object']
        try:
            key = bodies.get_key(body)
        except ValueError:
            logger.warning(f"Ignoring a nameless {resource.kind}: {body!r}")
            continue

        if raw_event['type'] is None:
            listed.add(key)
        if raw_event['type'] == 'DELETED':
            store.discard(body)
        else:
            store.replace(body)

        processor(resource, body)


def make_processor(
        *,
        cache: caching.Cache,
        queue: queueing.ReconcileQueue,
) -> ChangeProcessor:
    """
    Build a processor which requests the reconciliation for the changed objects.

    The health checks are reconciled directly; everything else is routed
    to the health checks which it can affect.
    """
    def process(resource: references.Resource, body: bodies.RawBody) -> None:
        if resource == references.MACHINEHEALTHCHECKS:
            queue.add(bodies.get_key(body))
            return

        change_cls: Optional[Callable[[bodies.RawBody], mapping.Change]] = CHANGES.get(resource)
        if change_cls is None:
            logger.error(f"Unsupported resource to route: {resource!r}")
            return

        mapping.enqueue(change_cls(body), cache=cache, queue=queue)

    return process
