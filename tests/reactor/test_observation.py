import logging

import pytest

from machinehealth.clients.watching import Bookmark
from machinehealth.reactor.caching import Cache
from machinehealth.reactor.observation import make_processor, resource_observer
from machinehealth.reactor.running import MANAGED_RESOURCES
from machinehealth.structs.references import CLUSTERS, MACHINEHEALTHCHECKS, MACHINES, NODES, \
                                             ObjectKey


def _stream(*events):
    async def infinite_watch(**kwargs):
        for event in events:
            yield event
    return infinite_watch


@pytest.fixture()
def processed():
    calls = []

    def processor(resource, body):
        calls.append((resource, body['metadata']['name']))

    return calls, processor


async def _observe(mocker, settings, cache, processor, resource, namespace, *events):
    mocker.patch('machinehealth.clients.watching.infinite_watch', _stream(*events))
    await resource_observer(settings=settings, resource=resource, namespace=namespace,
                            cache=cache, processor=processor)


async def test_listing_populates_and_syncs(mocker, settings, cache, processed,
                                           make_machine):
    calls, processor = processed
    await _observe(mocker, settings, cache, processor, MACHINES, None,
                   {'type': None, 'object': make_machine('m1')},
                   {'type': None, 'object': make_machine('m2')},
                   Bookmark.LISTED)

    assert set(cache[MACHINES]) == {ObjectKey('ns1', 'm1'), ObjectKey('ns1', 'm2')}
    assert cache[MACHINES].synced.is_set()
    assert calls == [(MACHINES, 'm1'), (MACHINES, 'm2')]


async def test_empty_listing_syncs(mocker, settings, cache, processed):
    _, processor = processed
    await _observe(mocker, settings, cache, processor, CLUSTERS, None, Bookmark.LISTED)
    assert cache[CLUSTERS].synced.is_set()


async def test_events_update_the_cache(mocker, settings, cache, processed, make_machine):
    calls, processor = processed
    modified = make_machine('m1', node='node1')
    await _observe(mocker, settings, cache, processor, MACHINES, None,
                   {'type': None, 'object': make_machine('m1')},
                   Bookmark.LISTED,
                   {'type': 'MODIFIED', 'object': modified},
                   {'type': 'ADDED', 'object': make_machine('m2')},
                   {'type': 'DELETED', 'object': make_machine('m2')})

    assert cache.get_obj(MACHINES, ObjectKey('ns1', 'm1')) == modified
    assert cache.get_obj(MACHINES, ObjectKey('ns1', 'm2')) is None
    assert calls == [(MACHINES, 'm1'), (MACHINES, 'm1'), (MACHINES, 'm2'), (MACHINES, 'm2')]


async def test_relisting_discards_the_vanished(mocker, settings, cache, processed, make_machine):
    calls, processor = processed
    await _observe(mocker, settings, cache, processor, MACHINES, None,
                   {'type': None, 'object': make_machine('m1')},
                   {'type': None, 'object': make_machine('m2')},
                   Bookmark.LISTED,
                   {'type': None, 'object': make_machine('m1')},
                   Bookmark.LISTED)

    assert list(cache[MACHINES]) == [ObjectKey('ns1', 'm1')]
    assert calls[-1] == (MACHINES, 'm2')


async def test_relisting_keeps_the_other_namespaces(mocker, settings, cache, processed,
                                                    make_machine):
    _, processor = processed
    cache[MACHINES].replace(make_machine('m9', namespace='ns2'))
    await _observe(mocker, settings, cache, processor, MACHINES, 'ns1',
                   {'type': None, 'object': make_machine('m1')},
                   Bookmark.LISTED)

    assert set(cache[MACHINES]) == {ObjectKey('ns1', 'm1'), ObjectKey('ns2', 'm9')}


async def test_nameless_objects_are_ignored(mocker, settings, cache, processed,
                                            assert_logs, caplog):
    caplog.set_level(logging.DEBUG)
    calls, processor = processed
    await _observe(mocker, settings, cache, processor, MACHINES, None,
                   {'type': 'ADDED', 'object': {'metadata': {'namespace': 'ns1'}}})

    assert len(cache[MACHINES]) == 0
    assert calls == []
    assert_logs([r"Ignoring a nameless Machine"])


async def test_processor_queues_the_policies_directly(cache, queue, make_policy):
    processor = make_processor(cache=cache, queue=queue)
    processor(MACHINEHEALTHCHECKS, make_policy('mhc9', cluster='unknown'))
    assert ObjectKey('ns1', 'mhc9') in queue


async def test_processor_routes_the_other_resources(cache, queue, make_policy, make_cluster,
                                                    make_machine):
    cache[MACHINEHEALTHCHECKS].replace(make_policy('mhc1'))
    cache[MACHINEHEALTHCHECKS].replace(make_policy('mhc2', cluster='cluster2'))
    processor = make_processor(cache=cache, queue=queue)

    processor(CLUSTERS, make_cluster('cluster2'))
    assert len(queue) == 1
    assert ObjectKey('ns1', 'mhc2') in queue

    processor(MACHINES, make_machine('m1'))
    assert len(queue) == 2
    assert ObjectKey('ns1', 'mhc1') in queue


async def test_processor_ignores_unsupported_resources(cache, queue, make_node,
                                                       assert_logs, caplog):
    caplog.set_level(logging.DEBUG)
    processor = make_processor(cache=cache, queue=queue)
    processor(NODES, make_node('node1'))
    assert len(queue) == 0
    assert_logs([r"Unsupported resource to route"])


async def test_one_namespace_listing_does_not_sync_the_others(mocker, settings, processed,
                                                              make_machine):
    _, processor = processed
    cache = Cache(MANAGED_RESOURCES, namespaces=['ns1', 'ns2'])

    await _observe(mocker, settings, cache, processor, MACHINES, 'ns1',
                   {'type': None, 'object': make_machine('m1', 'ns1')},
                   Bookmark.LISTED)
    assert not cache[MACHINES].synced.is_set()

    await _observe(mocker, settings, cache, processor, MACHINES, 'ns2',
                   {'type': None, 'object': make_machine('m2', 'ns2')},
                   Bookmark.LISTED)
    assert cache[MACHINES].synced.is_set()
    assert set(cache[MACHINES]) == {ObjectKey('ns1', 'm1'), ObjectKey('ns2', 'm2')}
