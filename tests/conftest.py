import asyncio
import datetime
import io
import json
import logging
import re
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

from machinehealth.clients import auth
from machinehealth.clients.auth import APIContext
from machinehealth.engines import posting
from machinehealth.engines.loggers import ObjectTextFormatter, configure
from machinehealth.reactor import caching, indexing, queueing
from machinehealth.reactor.running import MANAGED_RESOURCES
from machinehealth.structs.configuration import OperatorSettings
from machinehealth.structs.credentials import ConnectionInfo, Vault, VaultKey


@pytest.fixture()
def settings():
    return OperatorSettings()


@pytest.fixture()
def settings_via_contextvar(settings):
    token = posting.settings_var.set(settings)
    try:
        yield
    finally:
        posting.settings_var.reset(token)


@pytest.fixture()
async def event_queue(settings_via_contextvar):
    """
    An in-memory queue of the k8s-events, as if set by the operator.

    The events are not posted anywhere: the tests assert on the queue's content.
    """
    queue = asyncio.Queue()
    token = posting.event_queue_var.set(queue)
    try:
        yield queue
    finally:
        posting.event_queue_var.reset(token)


@pytest.fixture()
def cache():
    cache = caching.Cache(MANAGED_RESOURCES)
    indexing.register_indexes(cache)
    return cache


@pytest.fixture()
async def queue():
    queue = queueing.ReconcileQueue()
    try:
        yield queue
    finally:
        queue.close()


#
# Mocks for Kubernetes API clients. Reasons:
# 1. We do not test the clients, we test the layers on top of them,
#    so everything low-level should be mocked and assumed to be functional.
# 2. No external calls must be made under any circumstances.
#    The unit-tests must be fully isolated from the environment.
#

@pytest.fixture()
def hostname():
    """ A fake hostname to be used in all aiohttp/aresponses tests. """
    return 'fake-host'


@pytest.fixture()
def fake_vault(hostname):
    """
    Provide a freshly created and populated authentication vault for every test.

    Most of the tests expect some credentials to be at least provided
    (even if not used). So, we create and set the vault as if every coroutine
    is invoked from the central `operator` method (where it is set normally).
    """
    key = VaultKey('fixture')
    info = ConnectionInfo(server=f'https://{hostname}')
    vault = Vault({key: info})
    token = auth.vault_var.set(vault)
    try:
        yield vault
    finally:
        auth.vault_var.reset(token)


@pytest.fixture()
async def enforced_context(fake_vault, mocker):
    """
    Patchable context/session for some tests, e.g. with local exceptions.

    This test forces the re-authenticating decorators to always use one specific
    session for the duration of the test, so that the patches would have effect.
    """
    _, info = fake_vault.select()
    context = APIContext(info)
    mocker.patch(f'{APIContext.__module__}.{APIContext.__name__}', return_value=context)
    async with context.session:
        yield context


@pytest.fixture()
async def enforced_session(enforced_context: APIContext):
    yield enforced_context.session


# Note: Unused `fake_vault` is to ensure that the client wrappers have the credentials.
# Note: Unused `enforced_session` is to ensure that the session is closed for every test.
@pytest.fixture()
def resp_mocker(fake_vault, enforced_session, aresponses):
    """
    A factory of server-side callbacks for `aresponses` with mocking/spying.

    The value of the fixture is a function, which return a coroutine mock.
    That coroutine mock should be passed to `aresponses.add` as a response
    callback function. When called, it calls the mock defined by the function's
    arguments (specifically, return_value or side_effects).

    Sample usage::

        def test_me(resp_mocker):
            response = aiohttp.web.json_response({'a': 'b'})
            callback = resp_mocker(return_value=response)
            aresponses.add(hostname, '/path/', 'get', callback)
            do_something()
            assert callback.called
            assert callback.call_count == 1
    """
    def resp_maker(*args, **kwargs):
        actual_response = MagicMock(*args, **kwargs)
        async def resp_mock_effect(request):
            nonlocal actual_response

            # The request's content can be read inside of the handler only. We preserve
            # the data into a conventional field, so that they could be asserted later.
            try:
                request.data = await request.json()
            except json.JSONDecodeError:
                request.data = await request.text()

            # Get a response/error as it was intended (via return_value/side_effect).
            response = actual_response()
            return response

        return AsyncMock(side_effect=resp_mock_effect)
    return resp_maker


#
# Helpers for the logging checks.
#


@pytest.fixture()
def logstream(caplog):
    """ Prefixing is done at the final output. We have to intercept it. """

    logger = logging.getLogger()
    handlers = list(logger.handlers)

    # Setup all log levels of sub-libraries. A side-effect: the handlers are also added.
    configure(verbose=True)

    # Remove any stream handlers added in the step above. But keep the caplog's handlers.
    for handler in list(logger.handlers):
        if isinstance(handler, logging.StreamHandler) and handler.stream is sys.stderr:
            logger.removeHandler(handler)

    # Inject our stream-intercepting handler.
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    formatter = ObjectTextFormatter('prefix %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    try:
        with caplog.at_level(logging.DEBUG):
            yield stream
    finally:
        logger.removeHandler(handler)
        logger.handlers[:] = handlers  # undo `configure()`


@pytest.fixture()
def assert_logs(caplog):
    """
    A function to assert the logs are present (by pattern).

    The listed message patterns MUST be present, in the order specified.
    Some other log messages can also be present, but they are ignored.
    """
    def assert_logs_fn(patterns, prohibited=[], strict=False):
        __traceback_hide__ = True
        remaining_patterns = list(patterns)
        for message in caplog.messages:
            # The expected pattern is at position 0.
            # Looking-ahead: if one of the following patterns matches, while the
            # 0th does not, then the log message is missing, and we fail the test.
            for idx, pattern in enumerate(remaining_patterns):
                m = re.search(pattern, message)
                if m:
                    if idx == 0:
                        remaining_patterns[:1] = []
                        break  # out of `remaining_patterns` cycle
                    else:
                        skipped_patterns = remaining_patterns[:idx]
                        raise AssertionError(f"Few patterns were skipped: {skipped_patterns!r}")
                elif strict:
                    raise AssertionError(f"Unexpected log message: {message!r}")

            # Check that the prohibited patterns do not appear in any message.
            for pattern in prohibited:
                m = re.search(pattern, message)
                if m:
                    raise AssertionError(f"Prohibited log pattern found: {message!r} ~ {pattern!r}")

        # If all patterns have been matched in order, we are done.
        # if some are left, but the messages are over, then we fail.
        if remaining_patterns:
            raise AssertionError(f"Few patterns were missed: {remaining_patterns!r}")

    return assert_logs_fn


#
# Factories of the objects as they come from the API (with the kinds restored).
#

@pytest.fixture()
def now():
    return datetime.datetime(2020, 1, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


def _ago(now, seconds):
    return (now - datetime.timedelta(seconds=seconds)).strftime('%Y-%m-%dT%H:%M:%SZ')


@pytest.fixture()
def make_cluster():
    def factory(name='cluster1', namespace='ns1', *, paused=None, annotations=None):
        body = {'apiVersion': 'cluster.x-k8s.io/v1alpha3', 'kind': 'Cluster',
                'metadata': {'namespace': namespace, 'name': name, 'uid': f'uid-{name}'},
                'spec': {}}
        if paused is not None:
            body['spec']['paused'] = paused
        if annotations is not None:
            body['metadata']['annotations'] = annotations
        return body
    return factory


@pytest.fixture()
def make_policy():
    def factory(name='mhc1', namespace='ns1', *, cluster='cluster1',
                selector=None, conditions=None, startup=None, generation=1, **meta):
        spec = {'clusterName': cluster,
                'selector': selector if selector is not None else {'matchLabels': {'pool': 'a'}},
                'unhealthyConditions': conditions if conditions is not None else [
                    {'type': 'Ready', 'status': 'False', 'timeout': '5m'},
                    {'type': 'Ready', 'status': 'Unknown', 'timeout': '5m'},
                ]}
        if startup is not None:
            spec['nodeStartupTimeout'] = startup
        return {'apiVersion': 'cluster.x-k8s.io/v1alpha3', 'kind': 'MachineHealthCheck',
                'metadata': dict({'namespace': namespace, 'name': name, 'uid': f'uid-{name}',
                                  'generation': generation}, **meta),
                'spec': spec}
    return factory


@pytest.fixture()
def make_machine(now):
    def factory(name='m1', namespace='ns1', *, cluster='cluster1', node=None,
                labels=None, age=3600):
        body = {'apiVersion': 'cluster.x-k8s.io/v1alpha3', 'kind': 'Machine',
                'metadata': {'namespace': namespace, 'name': name, 'uid': f'uid-{name}',
                             'labels': labels if labels is not None else {'pool': 'a'},
                             'creationTimestamp': _ago(now, age)},
                'spec': {'clusterName': cluster}}
        if node is not None:
            body['status'] = {'nodeRef': {'kind': 'Node', 'name': node}}
        return body
    return factory


@pytest.fixture()
def make_node(now):
    def factory(name='node1', *, conditions=()):
        return {'apiVersion': 'v1', 'kind': 'Node',
                'metadata': {'name': name, 'uid': f'uid-{name}'},
                'status': {'conditions': [
                    {'type': type_, 'status': status, 'lastTransitionTime': _ago(now, since)}
                    for type_, status, since in conditions
                ]}}
    return factory
