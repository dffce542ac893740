"""
The reconciliation of the health checks: one pass for one health check.

The reconciliation is level-triggered: it is given only the identity
of a health check, and it recomputes everything from the caches
on every pass, regardless of what has caused it.

A pass goes through these steps:

* Fetch the health check and its cluster; skip the paused ones.
* Maintain the ownership and the cluster label of the health check.
* Ensure the nodes of the target cluster are watched.
* Resolve the machines governed by the health check and evaluate their health.
* Report the unhealthy machines and store the counters in the status.
* Persist all the changes as a merge-patch (always, even on failures).
* Request the next pass when the undecided machines can be decided.

The errors are not retried here: they are raised to the queue,
which retries the failed health checks with backoff.
"""
import contextlib
import copy
import datetime
import logging
from typing import Any, AsyncIterator, Collection, MutableMapping, Optional, Union, cast

from machinehealth.clients import patching, remote
from machinehealth.engines import loggers, posting
from machinehealth.reactor import caching, health, queueing, remotes, targets
from machinehealth.structs import bodies, configuration, patches, policies, references
from machinehealth.toolkits import hierarchies

logger = logging.getLogger(__name__)

REASON_UNHEALTHY = 'MachineMarkedUnhealthy'
REASON_ERROR = 'ReconcileError'


class ReconciliationError(Exception):
    """ Raised when a health check cannot be reconciled in the current state. """


class AggregatedError(ReconciliationError):
    """ Raised when several errors have happened in one reconciliation. """

    def __init__(self, errors: Collection[BaseException]) -> None:
        self.errors = tuple(errors)
        super().__init__('; '.join(f'{type(e).__name__}: {e}' for e in self.errors))


async def reconcile(
        key: references.ObjectKey,
        *,
        cache: caching.Cache,
        watches: remotes.ClusterWatches,
        settings: configuration.OperatorSettings,
        now: Optional[datetime.datetime] = None,
) -> queueing.Result:
    """
    Reconcile one health check by its identity.
    """
    policy = cache.get_obj(references.MACHINEHEALTHCHECKS, key)
    if policy is None:
        logger.debug(f"The health check {key} is absent. Nothing to reconcile.")
        return queueing.Result()

    object_logger = loggers.ObjectLogger(body=policy)
    try:
        cluster_key = policies.get_cluster_key(policy)
        if cluster_key is None:
            raise ReconciliationError(f"The health check {key} has no cluster name.")

        cluster = cache.get_obj(references.CLUSTERS, cluster_key)
        if cluster is None:
            raise ReconciliationError(f"The cluster {cluster_key} is not found.")

        if policies.is_paused(cluster, policy):
            object_logger.debug(f"Reconciliation is skipped: {cluster_key} or the health check "
                                f"is paused.")
            return queueing.Result()

        async with persistence(policy, logger=object_logger) as body:
            return await reconcile_policy(
                body,
                cluster=cluster,
                cache=cache,
                watches=watches,
                settings=settings,
                logger=object_logger,
                now=now,
            )

    except Exception as e:
        object_logger.error(f"Reconciliation has failed: {e}")
        posting.warn(policy, reason=REASON_ERROR, message=str(e))
        raise


async def reconcile_policy(
        body: bodies.RawBody,
        *,
        cluster: bodies.RawBody,
        cache: caching.Cache,
        watches: remotes.ClusterWatches,
        settings: configuration.OperatorSettings,
        logger: Union[logging.Logger, logging.LoggerAdapter],
        now: Optional[datetime.datetime] = None,
) -> queueing.Result:
    """
    Reconcile an already fetched health check, and modify its body in place.

    The body must be a private copy: it is modified and is later compared
    to the original to build a patch.
    """
    cluster_key = bodies.get_key(cluster)
    obj = cast(MutableMapping[str, Any], body)
    hierarchies.ensure_owner_reference(obj, cluster)
    hierarchies.label(obj, {policies.CLUSTER_NAME_LABEL: cluster_key.name}, forced=True)

    spec = policies.parse_spec(
        body, default_node_startup_timeout=settings.healthcheck.node_startup_timeout)

    watch = watches.get(cluster_key)
    if watch is None:
        client = await remote.build_cluster_client(cluster=cluster, settings=settings)
        watch = await watches.ensure_watch(cluster=cluster, settings=settings, client=client)
    if watch.error is not None:
        raise remote.RemoteAccessError(f"The nodes of {cluster_key} are stale: {watch.error}")

    found = targets.resolve_targets(
        cache=cache,
        nodes=watch.get_node,
        cluster=cluster,
        policy=body,
        spec=spec,
    )

    # The watch can take long to start: the clock is read only when everything is fetched.
    now = now if now is not None else datetime.datetime.now(datetime.timezone.utc)
    evaluation = health.evaluate(found, spec=spec, now=now)
    logger.debug(f"Evaluated {len(found)} targets: {evaluation.healthy_count} healthy, "
                 f"{len(evaluation.unhealthy)} unhealthy, "
                 f"{len(evaluation.next_checks)} undecided.")

    status = obj.setdefault('status', {})
    status['expectedMachines'] = len(found)
    status['currentHealthy'] = evaluation.healthy_count
    generation = obj.get('metadata', {}).get('generation')
    if generation is not None:
        status['observedGeneration'] = generation

    for target in evaluation.unhealthy:
        logger.info(f"Machine {target.machine_name!r} is unhealthy and needs remediation.")
        posting.warn(body, reason=REASON_UNHEALTHY,
                     message=f"Machine {target.machine_name} has been marked as unhealthy.")

    next_check = evaluation.next_check
    if next_check is not None:
        logger.debug(f"Re-checking in {next_check:.1f}s for the undecided targets.")
    return queueing.Result(requeue_after=next_check)


@contextlib.asynccontextmanager
async def persistence(
        policy: bodies.RawBody,
        *,
        logger: Union[logging.Logger, logging.LoggerAdapter],
) -> AsyncIterator[bodies.RawBody]:
    """
    Provide a modifiable copy of the object, and persist the changes on exit.

    The patch is applied on every exit: successful or failed. If both the block
    and the patching fail, the errors are combined into `AggregatedError`.
    """
    original = copy.deepcopy(policy)
    body = copy.deepcopy(policy)

    body_error: Optional[Exception] = None
    try:
        yield body
    except Exception as e:
        body_error = e

    patch_error: Optional[Exception] = None
    try:
        await apply_patch(original, body, logger=logger)
    except Exception as e:
        patch_error = e

    if body_error is not None and patch_error is not None:
        raise AggregatedError([body_error, patch_error]) from body_error
    elif body_error is not None:
        raise body_error
    elif patch_error is not None:
        raise patch_error


async def apply_patch(
        original: bodies.RawBody,
        modified: bodies.RawBody,
        *,
        logger: Union[logging.Logger, logging.LoggerAdapter],
) -> None:
    patch = patches.build(original, modified)
    if not patch:
        return

    key = bodies.get_key(original)
    logger.debug(f"Patching with: {patch!r}")
    resp = await patching.patch_obj(
        resource=references.MACHINEHEALTHCHECKS,
        namespace=key.namespace,
        name=key.name,
        patch=patch,
    )
    if resp is None:
        logger.debug("Patching was skipped: the object does not exist anymore.")
