"""
The registry of the node watches in the target (workload) clusters.

The nodes live in the target clusters, not in the management cluster,
so they cannot be watched from the start: the target clusters are only
known when the health checks referring to them are reconciled.

Every target cluster gets exactly one node watch on the first need,
which is then kept running until the operator exits. The nodes are cached
per cluster, and every node change is routed to the health checks
of the machines owning the nodes (via the same routing as for
the management cluster's objects).

Every cluster has its own start lock, so that the concurrent reconciliations
of the health checks of the same cluster never start two node watches,
while a slow or unreachable cluster does not hold the starts of the others.
"""
import asyncio
import logging
from typing import Callable, Dict, Iterator, Optional, Set

from machinehealth.clients import errors, remote, watching
from machinehealth.reactor import caching, mapping
from machinehealth.structs import bodies, configuration, references
from machinehealth.utilities import aiotasks

logger = logging.getLogger(__name__)

NodeProcessor = Callable[[mapping.NodeChange], None]


class ClusterWatch:
    """
    A running node watch of one target cluster, with its client and its cache.
    """

    def __init__(
            self,
            *,
            key: references.ObjectKey,
            client: remote.ClusterClient,
            cluster: Optional[bodies.RawBody] = None,
            nodes: Optional[caching.Store] = None,
    ) -> None:
        super().__init__()
        self.key = key
        self.client = client
        self.cluster = cluster
        self.error: Optional[Exception] = None  # the last failure since the last listing
        self.nodes = nodes if nodes is not None else caching.Store(references.NODES)
        self.task: Optional[aiotasks.Task] = None

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.key}: {len(self.nodes)} nodes>'

    def get_node(self, name: str) -> Optional[bodies.RawBody]:
        return self.nodes.get(references.ObjectKey(None, name))

    async def stop(self) -> None:
        if self.task is not None:
            await aiotasks.stop([self.task], title=f"Node watch of {self.key}", logger=logger)
        await self.client.close()


class ClusterWatches:
    """
    All the node watches of all the target clusters, by the cluster's key.
    """

    def __init__(self, processor: NodeProcessor) -> None:
        super().__init__()
        self._processor = processor
        self._watches: Dict[references.ObjectKey, ClusterWatch] = {}
        self._lock = asyncio.Lock()  # only for the dicts, never held over I/O
        self._starting: Dict[references.ObjectKey, asyncio.Lock] = {}

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {list(self._watches)!r}>'

    def __len__(self) -> int:
        return len(self._watches)

    def __iter__(self) -> Iterator[references.ObjectKey]:
        return iter(self._watches)

    def __contains__(self, key: object) -> bool:
        return key in self._watches

    def get(self, key: references.ObjectKey) -> Optional[ClusterWatch]:
        return self._watches.get(key)

    async def ensure_watch(
            self,
            *,
            cluster: bodies.RawBody,
            settings: configuration.OperatorSettings,
            client: Optional[remote.ClusterClient] = None,
    ) -> ClusterWatch:
        """
        Return the node watch of the cluster; start it if it is not running yet.

        The new watch is only registered after the nodes are listed for the first
        time. If it fails before that (or takes too long), it is stopped, its client
        is closed, and the error is raised with the registry left unchanged.
        """
        key = bodies.get_key(cluster)
        async with self._lock:
            existing = self._watches.get(key)
            starting = self._starting.setdefault(key, asyncio.Lock())
        if existing is None:
            async with starting:
                existing = self._watches.get(key)  # if started while waiting
                if existing is None:
                    return await self._start_watch(key, cluster=cluster, settings=settings,
                                                   client=client)
        if client is not None and client is not existing.client:
            await client.close()
        return existing

    async def _start_watch(
            self,
            key: references.ObjectKey,
            *,
            cluster: bodies.RawBody,
            settings: configuration.OperatorSettings,
            client: Optional[remote.ClusterClient],
    ) -> ClusterWatch:
        if client is None:
            client = await remote.build_cluster_client(cluster=cluster, settings=settings)

        watch = ClusterWatch(key=key, client=client, cluster=cluster)
        try:
            await self._start(watch, settings=settings)
        except BaseException:
            await watch.client.close()
            raise

        async with self._lock:
            self._watches[key] = watch
        logger.info(f"Started watching the nodes of {key}.")
        return watch

    async def close(self) -> None:
        """
        Stop all the node watches and close their clients.
        """
        async with self._lock:
            watches = list(self._watches.values())
            self._watches.clear()
        for watch in watches:
            await watch.stop()

    async def _start(
            self,
            watch: ClusterWatch,
            *,
            settings: configuration.OperatorSettings,
    ) -> None:
        title = f"Node watch of {watch.key}"
        watch.task = aiotasks.create_guarded_task(
            self._watch_nodes(watch, settings=settings), title, logger=logger)
        synced = aiotasks.create_task(watch.nodes.synced.wait())
        try:
            await aiotasks.wait([watch.task, synced],
                                timeout=settings.remote.sync_timeout,
                                return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await aiotasks.stop([watch.task], title=title, logger=logger)
            raise
        finally:
            synced.cancel()

        if watch.nodes.synced.is_set():
            return

        error = None
        if watch.task.done() and not watch.task.cancelled():
            error = watch.task.exception()
        await aiotasks.stop([watch.task], title=title, logger=logger)
        if error is not None:
            raise remote.RemoteAccessError(f"Failed to list the nodes of {watch.key}: "
                                           f"{error}") from error
        raise remote.RemoteAccessError(f"The nodes of {watch.key} were not listed "
                                       f"within {settings.remote.sync_timeout}s.")

    async def _watch_nodes(
            self,
            watch: ClusterWatch,
            *,
            settings: configuration.OperatorSettings,
    ) -> None:
        """
        Keep the node cache of the cluster in sync, until cancelled.

        The failures before the first listing are escalated (to fail the watch's
        start); the failures afterwards are logged and the watch is re-established.
        Until the nodes are listed again, the failure is kept in the watch, so that
        the reconciliations do not trust the stale nodes. If the credentials are
        rejected, the client is rebuilt from the cluster's current kubeconfig secret.
        """
        while True:
            try:
                await self._stream_nodes(watch, settings=settings)
            except Exception as e:
                if not watch.nodes.synced.is_set():
                    raise
                watch.error = e
                logger.error(f"The node watch of {watch.key} has failed, "
                             f"restarting in {settings.remote.error_backoff}s: {e}")
                if isinstance(e, (errors.APIUnauthorizedError, errors.APIForbiddenError)):
                    await self._rebuild_client(watch, settings=settings)
            await asyncio.sleep(settings.remote.error_backoff)

    async def _rebuild_client(
            self,
            watch: ClusterWatch,
            *,
            settings: configuration.OperatorSettings,
    ) -> None:
        if watch.cluster is None:
            return
        try:
            client = await remote.build_cluster_client(cluster=watch.cluster, settings=settings)
        except Exception as e:
            watch.error = e
            logger.error(f"The client of {watch.key} cannot be rebuilt: {e}")
            return
        stale, watch.client = watch.client, client
        await stale.close()
        logger.info(f"The client of {watch.key} is rebuilt with the fresh credentials.")

    async def _stream_nodes(
            self,
            watch: ClusterWatch,
            *,
            settings: configuration.OperatorSettings,
    ) -> None:
        listed: Set[references.ObjectKey] = set()
        stream = watching.infinite_watch(
            settings=settings,
            resource=references.NODES,
            namespace=None,
            context=watch.client.context,
        )
        async for raw_event in stream:

            # After a (re-)listing, the nodes deleted while disconnected are gone silently.
            if isinstance(raw_event, watching.Bookmark):
                if raw_event == watching.Bookmark.LISTED:
                    for vanished in watch.nodes.retain(listed):
                        self._processor(mapping.NodeChange(vanished, cluster=watch.key))
                    listed = set()
                    watch.nodes.mark_synced()
                    watch.error = None
                continue

            body = raw_event['object']
            if raw_event['type'] is None:
                listed.add(bodies.get_key(body))
            if raw_event['type'] == 'DELETED':
                watch.nodes.discard(body)
            else:
                watch.nodes.replace(body)

            self._processor(mapping.NodeChange(body, cluster=watch.key))
