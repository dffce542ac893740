import asyncio
import logging
import os

import pytest

from machinehealth.reactor.activities import authenticate, login
from machinehealth.structs.credentials import ConnectionInfo, LoginError, Vault, VaultKey
from machinehealth.utilities import piggybacking
from machinehealth.utilities.piggybacking import PRIORITY_OF_SERVICE_ACCOUNT, \
                                                 login_with_service_account


@pytest.fixture()
def service_account_dir(tmpdir, mocker):
    mocker.patch.object(piggybacking, 'SERVICE_ACCOUNT_DIR', str(tmpdir))
    return tmpdir


def test_service_account_is_absent(service_account_dir):
    assert login_with_service_account() is None


def test_service_account_with_token_only(service_account_dir):
    service_account_dir.join('token').write('  tkn\n')

    info = login_with_service_account()

    assert info.server == 'https://kubernetes.default.svc'
    assert info.token == 'tkn'
    assert info.ca_path is None
    assert info.default_namespace is None
    assert info.priority == PRIORITY_OF_SERVICE_ACCOUNT


def test_service_account_with_everything(service_account_dir):
    service_account_dir.join('token').write('tkn')
    service_account_dir.join('namespace').write('ns1\n')
    service_account_dir.join('ca.crt').write('...')

    info = login_with_service_account()

    assert info.token == 'tkn'
    assert info.default_namespace == 'ns1'
    assert info.ca_path == os.path.join(str(service_account_dir), 'ca.crt')


def test_login_collects_the_credentials():
    info1 = ConnectionInfo(server='https://one/')
    info2 = ConnectionInfo(server='https://two/')
    results = login([
        ('method1', lambda: info1),
        ('method2', lambda: None),
        ('method3', lambda: info2),
    ])
    assert results == {'method1': info1, 'method3': info2}


@pytest.mark.parametrize('error', [OSError("no file"), ValueError("bad yaml"), LoginError("nope")])
def test_login_tolerates_the_failed_methods(error, assert_logs, caplog):
    caplog.set_level(logging.DEBUG)
    info = ConnectionInfo(server='https://two/')

    def failing():
        raise error

    results = login([('method1', failing), ('method2', lambda: info)])

    assert results == {'method2': info}
    assert_logs([r"Login method method1 has failed: "])


def test_login_escalates_the_unexpected_errors():
    def failing():
        raise RuntimeError("unexpected")

    with pytest.raises(RuntimeError):
        login([('method1', failing)])


async def test_authentication_populates_the_vault(assert_logs, caplog):
    caplog.set_level(logging.DEBUG)
    info = ConnectionInfo(server='https://one/')
    vault = Vault()

    await asyncio.wait_for(authenticate(vault=vault, methods=[('method1', lambda: info)]),
                           timeout=1.0)

    assert vault
    assert vault.select()[0] == VaultKey('method1')
    assert_logs([r"Authentication has been initiated\.", r"Authentication has finished: method1\."])


async def test_authentication_warns_when_nothing_is_found(assert_logs, caplog):
    caplog.set_level(logging.DEBUG)
    vault = Vault()

    await asyncio.wait_for(authenticate(vault=vault, methods=[('method1', lambda: None)]),
                           timeout=1.0)

    assert not vault
    assert_logs([r"Authentication has failed: no credentials were retrieved"])
