import logging

import pytest

from machinehealth.reactor.indexing import MACHINE_NODE_NAME_INDEX, POLICY_CLUSTER_NAME_INDEX, \
                                           index_machine_by_node_name, index_policy_by_cluster_name
from machinehealth.structs.references import MACHINEHEALTHCHECKS, MACHINES, ObjectKey


def test_policy_is_indexed_by_cluster_name(make_policy):
    assert index_policy_by_cluster_name(make_policy(cluster='c1')) == ['c1']


@pytest.mark.parametrize('cluster', [None, '', 123])
def test_policy_without_cluster_name_is_not_indexed(make_policy, cluster):
    assert index_policy_by_cluster_name(make_policy(cluster=cluster)) == []


def test_machine_is_indexed_by_node_name(make_machine):
    assert index_machine_by_node_name(make_machine(node='n1')) == ['n1']


def test_machine_without_node_is_not_indexed(make_machine):
    assert index_machine_by_node_name(make_machine()) == []


def test_wrong_kinds_are_not_indexed(make_machine, make_policy, caplog):
    caplog.set_level(logging.DEBUG)
    assert index_policy_by_cluster_name(make_machine(node='n1')) == []
    assert index_machine_by_node_name(make_policy()) == []
    assert "Expected a MachineHealthCheck to index, got Machine." in caplog.messages
    assert "Expected a Machine to index, got MachineHealthCheck." in caplog.messages


def test_indexes_are_registered(cache, make_machine, make_policy):
    cache[MACHINEHEALTHCHECKS].replace(make_policy(cluster='c1'))
    cache[MACHINES].replace(make_machine(node='n1'))
    policies = cache[MACHINEHEALTHCHECKS].get_index(POLICY_CLUSTER_NAME_INDEX).lookup('c1')
    machines = cache[MACHINES].get_index(MACHINE_NODE_NAME_INDEX).lookup('n1')
    assert policies == {ObjectKey('ns1', 'mhc1')}
    assert machines == {ObjectKey('ns1', 'm1')}


def test_node_ref_changes_are_reindexed(cache, make_machine):
    cache[MACHINES].replace(make_machine(node='n1'))
    cache[MACHINES].replace(make_machine(node='n2'))
    index = cache[MACHINES].get_index(MACHINE_NODE_NAME_INDEX)
    assert index.lookup('n1') == set()
    assert index.lookup('n2') == {ObjectKey('ns1', 'm1')}
