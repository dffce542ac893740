import asyncio
import datetime
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from machinehealth.clients.errors import APIUnauthorizedError
from machinehealth.clients.remote import RemoteAccessError
from machinehealth.reactor import health
from machinehealth.reactor.caching import Store
from machinehealth.reactor.queueing import Result
from machinehealth.reactor.reconciling import REASON_ERROR, REASON_UNHEALTHY, AggregatedError, \
                                              ReconciliationError, apply_patch, persistence, \
                                              reconcile
from machinehealth.reactor.remotes import ClusterWatch, ClusterWatches
from machinehealth.structs.policies import CLUSTER_NAME_LABEL, PolicyError
from machinehealth.structs.references import CLUSTERS, MACHINEHEALTHCHECKS, MACHINES, NODES, \
                                             ObjectKey

KEY = ObjectKey('ns1', 'mhc1')
CLUSTER_KEY = ObjectKey('ns1', 'cluster1')


@pytest.fixture()
def patch_obj(mocker):
    return mocker.patch('machinehealth.clients.patching.patch_obj', AsyncMock(return_value={}))


@pytest.fixture()
def watch(make_node):
    nodes = Store(NODES)
    nodes.replace(make_node('node1', conditions=[('Ready', 'True', 1000)]))
    nodes.replace(make_node('node2', conditions=[('Ready', 'False', 1000)]))
    return ClusterWatch(key=CLUSTER_KEY, client=MagicMock(), nodes=nodes)


@pytest.fixture()
def watches(watch):
    watches = MagicMock(spec=ClusterWatches)
    watches.get.return_value = watch
    watches.ensure_watch = AsyncMock(return_value=watch)
    return watches


@pytest.fixture()
def populated(cache, make_cluster, make_policy, make_machine):
    cache[CLUSTERS].replace(make_cluster())
    cache[MACHINEHEALTHCHECKS].replace(make_policy())
    cache[MACHINES].replace(make_machine('m1', node='node1'))
    cache[MACHINES].replace(make_machine('m2', node='node2'))
    cache[MACHINES].replace(make_machine('m3', node='node3', labels={'pool': 'b'}))
    return cache


def _events(event_queue):
    events = []
    while not event_queue.empty():
        events.append(event_queue.get_nowait())
    return events


async def test_healthy_and_unhealthy_machines(populated, watches, settings, event_queue,
                                              patch_obj, now):
    result = await reconcile(KEY, cache=populated, watches=watches, settings=settings, now=now)

    assert result == Result(requeue_after=None)
    assert patch_obj.await_count == 1
    patch = patch_obj.await_args.kwargs['patch']
    assert patch_obj.await_args.kwargs['resource'] == MACHINEHEALTHCHECKS
    assert patch_obj.await_args.kwargs['namespace'] == 'ns1'
    assert patch_obj.await_args.kwargs['name'] == 'mhc1'
    assert patch['status'] == {'expectedMachines': 2, 'currentHealthy': 1, 'observedGeneration': 1}
    assert patch['metadata']['labels'] == {CLUSTER_NAME_LABEL: 'cluster1'}
    assert patch['metadata']['ownerReferences'] == [{
        'apiVersion': 'cluster.x-k8s.io/v1alpha3',
        'kind': 'Cluster',
        'name': 'cluster1',
        'uid': 'uid-cluster1',
    }]

    events = _events(event_queue)
    assert len(events) == 1
    assert events[0].type == 'Warning'
    assert events[0].reason == REASON_UNHEALTHY
    assert events[0].message == "Machine m2 has been marked as unhealthy."
    assert events[0].ref['name'] == 'mhc1'


async def test_nodeless_machines_past_the_startup_are_unhealthy(cache, watches, settings,
                                                                event_queue, patch_obj, now,
                                                                make_cluster, make_policy,
                                                                make_machine):
    cache[CLUSTERS].replace(make_cluster())
    cache[MACHINEHEALTHCHECKS].replace(make_policy(startup='10m'))
    cache[MACHINES].replace(make_machine('m1', node='node1'))
    cache[MACHINES].replace(make_machine('m2', age=1200))

    result = await reconcile(KEY, cache=cache, watches=watches, settings=settings, now=now)

    assert result == Result(requeue_after=None)
    patch = patch_obj.await_args.kwargs['patch']
    assert patch['status']['expectedMachines'] == 2
    assert patch['status']['currentHealthy'] == 1
    events = _events(event_queue)
    assert [event.message for event in events] == ["Machine m2 has been marked as unhealthy."]


async def test_cached_objects_are_not_modified(populated, watches, settings, event_queue,
                                               patch_obj, now, make_policy):
    await reconcile(KEY, cache=populated, watches=watches, settings=settings, now=now)
    assert populated.get_obj(MACHINEHEALTHCHECKS, KEY) == make_policy()


async def test_unchanged_policies_are_not_patched(populated, watches, settings, event_queue,
                                                  patch_obj, now, make_policy):
    policy = make_policy()
    policy['metadata']['labels'] = {CLUSTER_NAME_LABEL: 'cluster1'}
    policy['metadata']['ownerReferences'] = [{
        'apiVersion': 'cluster.x-k8s.io/v1alpha3',
        'kind': 'Cluster',
        'name': 'cluster1',
        'uid': 'uid-cluster1',
    }]
    policy['status'] = {'expectedMachines': 2, 'currentHealthy': 1, 'observedGeneration': 1}
    populated[MACHINEHEALTHCHECKS].replace(policy)

    await reconcile(KEY, cache=populated, watches=watches, settings=settings, now=now)

    assert not patch_obj.called


async def test_undecided_machines_are_requeued(populated, watches, settings, event_queue,
                                               patch_obj, now, make_machine):
    populated[MACHINES].replace(make_machine('m4', age=590))  # 10s before the node startup timeout
    result = await reconcile(KEY, cache=populated, watches=watches, settings=settings, now=now)
    assert result == Result(requeue_after=10)
    assert patch_obj.await_args.kwargs['patch']['status']['expectedMachines'] == 3


async def test_absent_policy_is_ignored(cache, watches, settings, event_queue, patch_obj, now):
    result = await reconcile(KEY, cache=cache, watches=watches, settings=settings, now=now)
    assert result == Result()
    assert not patch_obj.called
    assert _events(event_queue) == []


@pytest.mark.parametrize('paused_cluster, paused_policy', [
    pytest.param(True, False, id='cluster'),
    pytest.param(False, True, id='policy'),
])
async def test_paused_policies_are_skipped(cache, watches, settings, event_queue, patch_obj,
                                           now, make_cluster, make_policy,
                                           paused_cluster, paused_policy):
    annotations = {'cluster.x-k8s.io/paused': ''} if paused_policy else None
    cache[CLUSTERS].replace(make_cluster(paused=paused_cluster))
    cache[MACHINEHEALTHCHECKS].replace(make_policy(**({'annotations': annotations}
                                                      if annotations else {})))

    result = await reconcile(KEY, cache=cache, watches=watches, settings=settings, now=now)

    assert result == Result()
    assert not patch_obj.called
    assert not watches.ensure_watch.called


async def test_absent_cluster_fails(cache, watches, settings, event_queue, patch_obj, now,
                                    make_policy, assert_logs, caplog):
    caplog.set_level(logging.DEBUG)
    cache[MACHINEHEALTHCHECKS].replace(make_policy())

    with pytest.raises(ReconciliationError, match=r"The cluster ns1/cluster1 is not found."):
        await reconcile(KEY, cache=cache, watches=watches, settings=settings, now=now)

    assert not patch_obj.called
    events = _events(event_queue)
    assert [(e.type, e.reason) for e in events] == [('Warning', REASON_ERROR)]
    assert_logs([r"Reconciliation has failed: The cluster ns1/cluster1 is not found."])


async def test_policy_without_cluster_fails(cache, watches, settings, event_queue, patch_obj,
                                            now, make_policy):
    cache[MACHINEHEALTHCHECKS].replace(make_policy(cluster=None))
    with pytest.raises(ReconciliationError, match=r"has no cluster name"):
        await reconcile(KEY, cache=cache, watches=watches, settings=settings, now=now)


async def test_invalid_policies_persist_the_ownership(populated, watches, settings, event_queue,
                                                      patch_obj, now, make_policy):
    policy = make_policy(conditions=[{'type': 'Ready', 'status': 'False', 'timeout': 'soon'}])
    populated[MACHINEHEALTHCHECKS].replace(policy)

    with pytest.raises(PolicyError):
        await reconcile(KEY, cache=populated, watches=watches, settings=settings, now=now)

    patch = patch_obj.await_args.kwargs['patch']
    assert patch['metadata']['labels'] == {CLUSTER_NAME_LABEL: 'cluster1'}
    assert 'status' not in patch
    assert [e.reason for e in _events(event_queue)] == [REASON_ERROR]


async def test_node_watch_is_started_on_demand(mocker, populated, watches, watch, settings,
                                               event_queue, patch_obj, now):
    client = MagicMock()
    build = mocker.patch('machinehealth.clients.remote.build_cluster_client',
                         AsyncMock(return_value=client))
    watches.get.return_value = None

    await reconcile(KEY, cache=populated, watches=watches, settings=settings, now=now)

    assert build.await_count == 1
    assert build.await_args.kwargs['cluster']['metadata']['name'] == 'cluster1'
    assert watches.ensure_watch.await_count == 1
    assert watches.ensure_watch.await_args.kwargs['client'] is client


async def test_unreachable_clusters_fail(mocker, populated, watches, settings,
                                         event_queue, patch_obj, now):
    mocker.patch('machinehealth.clients.remote.build_cluster_client',
                 AsyncMock(side_effect=Exception("unreachable")))
    watches.get.return_value = None

    with pytest.raises(Exception, match=r"unreachable"):
        await reconcile(KEY, cache=populated, watches=watches, settings=settings, now=now)

    # The ownership is still persisted, but no counters are (as they are unknown).
    assert 'status' not in patch_obj.await_args.kwargs['patch']


async def test_failing_node_watches_fail(populated, watches, watch, settings, event_queue,
                                         patch_obj, now):
    watch.error = APIUnauthorizedError({'message': 'Unauthorized'}, status=401)

    with pytest.raises(RemoteAccessError, match=r"The nodes of ns1/cluster1 are stale"):
        await reconcile(KEY, cache=populated, watches=watches, settings=settings, now=now)

    assert 'status' not in patch_obj.await_args.kwargs['patch']
    assert [e.reason for e in _events(event_queue)] == [REASON_ERROR]


async def test_nothing_selected(populated, watches, settings, event_queue, patch_obj, now,
                                make_policy):
    populated[MACHINEHEALTHCHECKS].replace(make_policy(selector={'matchLabels': {'pool': 'z'}}))

    result = await reconcile(KEY, cache=populated, watches=watches, settings=settings, now=now)

    assert result == Result()
    patch = patch_obj.await_args.kwargs['patch']
    assert patch['status'] == {'expectedMachines': 0, 'currentHealthy': 0, 'observedGeneration': 1}
    assert not _events(event_queue)


async def test_clock_is_read_after_the_node_watch_is_started(mocker, populated, watches, watch,
                                                             settings, event_queue, patch_obj):
    async def slow_start(**kwargs):
        await asyncio.sleep(0.1)
        return watch

    mocker.patch('machinehealth.clients.remote.build_cluster_client', AsyncMock())
    evaluate = mocker.patch('machinehealth.reactor.health.evaluate', wraps=health.evaluate)
    watches.get.return_value = None
    watches.ensure_watch = AsyncMock(side_effect=slow_start)

    started = datetime.datetime.now(datetime.timezone.utc)
    await reconcile(KEY, cache=populated, watches=watches, settings=settings)

    assert evaluate.call_args.kwargs['now'] - started >= datetime.timedelta(seconds=0.1)


async def test_persistence_patches_the_changes(patch_obj, make_policy):
    policy = make_policy()
    async with persistence(policy, logger=logging.getLogger()) as body:
        body['status'] = {'currentHealthy': 1}
        assert body is not policy

    assert 'status' not in policy
    assert patch_obj.await_args.kwargs['patch'] == {'status': {'currentHealthy': 1}}


async def test_persistence_raises_the_block_errors(patch_obj, make_policy):
    with pytest.raises(ValueError, match=r"boo"):
        async with persistence(make_policy(), logger=logging.getLogger()) as body:
            body['status'] = {'currentHealthy': 1}
            raise ValueError("boo")
    assert patch_obj.await_count == 1


async def test_persistence_raises_the_patching_errors(patch_obj, make_policy):
    patch_obj.side_effect = Exception("api is down")
    with pytest.raises(Exception, match=r"api is down"):
        async with persistence(make_policy(), logger=logging.getLogger()) as body:
            body['status'] = {'currentHealthy': 1}


async def test_persistence_aggregates_the_errors(patch_obj, make_policy):
    patch_obj.side_effect = Exception("api is down")
    with pytest.raises(AggregatedError) as err:
        async with persistence(make_policy(), logger=logging.getLogger()) as body:
            body['status'] = {'currentHealthy': 1}
            raise ValueError("boo")
    assert [str(e) for e in err.value.errors] == ["boo", "api is down"]
    assert isinstance(err.value, ReconciliationError)


async def test_patching_of_absent_objects_is_tolerated(patch_obj, make_policy):
    patch_obj.return_value = None
    policy = make_policy()
    await apply_patch(policy, dict(policy, status={'a': 1}), logger=logging.getLogger())
    assert patch_obj.await_count == 1


async def test_empty_patches_are_not_applied(patch_obj, make_policy):
    await apply_patch(make_policy(), make_policy(), logger=logging.getLogger())
    assert not patch_obj.called
