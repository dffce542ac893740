"""
The operator's lifecycle: the root tasks, their start, and their shutdown.

All the root tasks run until the operator stops. The first one that exits
(the stopper, or any task that failed) stops the others; then the tasks
they have spawned (node watches, workers) get a few seconds to exit
before they are cancelled too.
"""
import asyncio
import functools
import logging
import signal
import threading
from typing import Collection, List, Optional, Sequence

from machinehealth.clients import auth
from machinehealth.engines import posting, reporting
from machinehealth.reactor import activities, caching, indexing, mapping, observation, \
                                  queueing, reconciling, remotes
from machinehealth.structs import configuration, credentials, primitives, references
from machinehealth.utilities import aiotasks

logger = logging.getLogger(__name__)

# The resources of the management cluster, watched from the start.
MANAGED_RESOURCES: Sequence[references.Resource] = (
    references.MACHINEHEALTHCHECKS,
    references.CLUSTERS,
    references.MACHINES,
)

# How long the spawned sub-tasks are waited for after the root tasks are stopped.
SUBTASKS_GRACE_PERIOD = 5.0


def run(
        *,
        settings: Optional[configuration.OperatorSettings] = None,
        liveness_endpoint: Optional[str] = None,
        clusterwide: bool = False,
        namespaces: Collection[references.Namespace] = (),
        stop_flag: Optional[primitives.Flag] = None,
        ready_flag: Optional[primitives.Flag] = None,
        vault: Optional[credentials.Vault] = None,
) -> None:
    """ Run the operator in a new event loop until it is stopped. """
    asyncio.run(operator(
        settings=settings,
        liveness_endpoint=liveness_endpoint,
        clusterwide=clusterwide,
        namespaces=namespaces,
        stop_flag=stop_flag,
        ready_flag=ready_flag,
        vault=vault,
    ))


async def operator(
        *,
        settings: Optional[configuration.OperatorSettings] = None,
        liveness_endpoint: Optional[str] = None,
        clusterwide: bool = False,
        namespaces: Collection[references.Namespace] = (),
        stop_flag: Optional[primitives.Flag] = None,
        ready_flag: Optional[primitives.Flag] = None,
        vault: Optional[credentials.Vault] = None,
) -> None:
    """ Run the operator in the current event loop until it is stopped. """
    existing_tasks = aiotasks.all_tasks()
    root_tasks = await spawn_tasks(
        settings=settings,
        liveness_endpoint=liveness_endpoint,
        clusterwide=clusterwide,
        namespaces=namespaces,
        stop_flag=stop_flag,
        ready_flag=ready_flag,
        vault=vault,
    )
    await run_tasks(root_tasks, ignored=existing_tasks)


async def spawn_tasks(
        *,
        settings: Optional[configuration.OperatorSettings] = None,
        liveness_endpoint: Optional[str] = None,
        clusterwide: bool = False,
        namespaces: Collection[references.Namespace] = (),
        stop_flag: Optional[primitives.Flag] = None,
        ready_flag: Optional[primitives.Flag] = None,
        vault: Optional[credentials.Vault] = None,
) -> List[aiotasks.Task]:
    """
    Build the shared state of the operator and start its root tasks.

    The ready-flag is raised once the tasks are started; the reconciliation
    itself starts later, when all the managed resources are listed.
    """
    if clusterwide and namespaces:
        raise TypeError("The operator can be either cluster-wide or namespaced, not both.")
    if not clusterwide and not namespaces:
        logger.warning("Neither namespaces nor the cluster-wide mode are specified. "
                       "Switching to the cluster-wide mode.")
        clusterwide = True
    served_namespaces: Collection[references.Namespace] = [None] if clusterwide else namespaces

    settings = settings if settings is not None else configuration.OperatorSettings()
    vault = vault if vault is not None else credentials.Vault()
    event_queue: posting.K8sEventQueue = asyncio.Queue()
    signal_flag: aiotasks.Future = asyncio.get_running_loop().create_future()

    cache = caching.Cache(MANAGED_RESOURCES, namespaces=served_namespaces)
    indexing.register_indexes(cache)
    queue = queueing.ReconcileQueue()
    watches = remotes.ClusterWatches(
        processor=functools.partial(mapping.enqueue, cache=cache, queue=queue))
    reconciler = functools.partial(reconciling.reconcile,
                                   cache=cache, watches=watches, settings=settings)

    # The API clients and the event posting find these without passing them around.
    auth.vault_var.set(vault)
    posting.settings_var.set(settings)
    posting.event_queue_var.set(event_queue)

    tasks: List[aiotasks.Task] = [
        aiotasks.create_task(_stopper(stop_flag, signal_flag), name="stopper"),
        aiotasks.create_guarded_task(activities.authenticator(vault=vault),
                                     "credentials retriever", logger=logger),
        aiotasks.create_guarded_task(posting.poster(event_queue=event_queue),
                                     "poster of events", logger=logger),
    ]
    if liveness_endpoint:
        tasks.append(aiotasks.create_guarded_task(
            reporting.health_reporter(endpoint=liveness_endpoint,
                                    cache=cache, watches=watches, queue=queue),
            "health reporter", logger=logger))

    processor = observation.make_processor(cache=cache, queue=queue)
    for resource in MANAGED_RESOURCES:
        for namespace in served_namespaces:
            where = f'in {namespace!r}' if namespace is not None else 'cluster-wide'
            tasks.append(aiotasks.create_guarded_task(
                observation.resource_observer(settings=settings, resource=resource,
                                              namespace=namespace, cache=cache,
                                              processor=processor),
                f"observer of {resource} {where}", logger=logger))

    tasks.append(aiotasks.create_guarded_task(
        _dispatcher_after_sync(cache=cache, queue=queue, reconciler=reconciler, settings=settings),
        "reconciliation dispatcher", logger=logger))

    # The closer sees all the other root tasks, so it must be the last one.
    tasks.append(aiotasks.create_task(
        _closer(list(tasks), watches=watches, vault=vault), name="closer"))

    _install_signal_handlers(signal_flag)
    primitives.raise_flag(ready_flag)
    return tasks


async def run_tasks(
        root_tasks: Collection[aiotasks.Task],
        *,
        ignored: Collection[aiotasks.Task] = frozenset(),
) -> None:
    """
    Wait until any root task exits, then stop all the tasks of the operator.

    The tasks existing before the operator (the ignored ones) are not touched.
    A failure of any root task is re-raised once everything is stopped.
    """
    try:
        await aiotasks.wait(root_tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await aiotasks.stop(root_tasks, title="Root", logger=logger, interval=10)
        await aiotasks.stop(aiotasks.all_tasks(ignored=ignored), title="Leftover", logger=logger)
        raise

    await aiotasks.stop(root_tasks, title="Root", logger=logger, interval=10)

    leftovers = aiotasks.all_tasks(ignored=ignored)
    _, pending = await aiotasks.wait(leftovers, timeout=SUBTASKS_GRACE_PERIOD)
    await aiotasks.stop(pending, title="Leftover", logger=logger, interval=1)

    aiotasks.reraise(root_tasks)


async def _dispatcher_after_sync(
        *,
        cache: caching.Cache,
        queue: queueing.ReconcileQueue,
        reconciler: queueing.Reconciler,
        settings: configuration.OperatorSettings,
) -> None:
    # A health check reconciled on a partial cache would see its machines as missing.
    await cache.wait_for_sync()
    logger.info(f"All caches are synced: {cache!r}. Reconciliation is starting.")
    await queueing.dispatcher(queue=queue, reconciler=reconciler, settings=settings)


async def _stopper(
        stop_flag: Optional[primitives.Flag],
        signal_flag: aiotasks.Future,
) -> None:
    """ Exit when the operator is asked to stop; this stops all the other root tasks. """
    waiters = [signal_flag]
    if stop_flag is not None:
        waiters.append(aiotasks.create_task(primitives.wait_flag(stop_flag), name="stop-flag waiter"))
    try:
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()

    if signal_flag in done:
        logger.info("Signal %s is received. Operator is stopping.", signal_flag.result().name)
    else:
        logger.info("Stop-flag is raised. Operator is stopping.")


async def _closer(
        siblings: Collection[aiotasks.Task],
        *,
        watches: remotes.ClusterWatches,
        vault: credentials.Vault,
) -> None:
    """
    Release what outlives the tasks: the node watches and the API sessions.

    It sleeps until cancelled at the shutdown, and then waits for its siblings,
    since they use the sessions until they exit.
    """
    try:
        await asyncio.Event().wait()
    finally:
        await aiotasks.wait(siblings)
        await watches.close()
        await vault.close()


def _install_signal_handlers(signal_flag: aiotasks.Future) -> None:
    if threading.current_thread() is not threading.main_thread():
        logger.warning("OS signals are ignored: running not in the main thread.")
        return

    def _received(signum: signal.Signals) -> None:
        if not signal_flag.done():
            signal_flag.set_result(signum)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _received, signal.SIGINT)
        loop.add_signal_handler(signal.SIGTERM, _received, signal.SIGTERM)
    except NotImplementedError:
        logger.warning("OS signals are ignored: no signal handlers on this platform.")
