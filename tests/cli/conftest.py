import functools

import click.testing
import pytest

from machinehealth.cli import main


@pytest.fixture()
def runner():
    runner = click.testing.CliRunner()
    return runner


@pytest.fixture()
def invoke(runner):
    return functools.partial(runner.invoke, main)


@pytest.fixture()
def real_run(mocker):
    return mocker.patch('machinehealth.reactor.running.run')


@pytest.fixture(autouse=True)
def _no_logging_configuration(mocker):
    return mocker.patch('machinehealth.engines.loggers.configure')
