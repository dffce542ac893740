import dataclasses
import functools
from typing import Any, Callable, Collection, Optional

import click

from machinehealth.engines import loggers
from machinehealth.reactor import running
from machinehealth.structs import configuration, credentials, primitives, references


@dataclasses.dataclass()
class CLIControls:
    """ Controls of the operator's run, which are impossible to pass via CLI. """
    ready_flag: Optional[primitives.Flag] = None
    stop_flag: Optional[primitives.Flag] = None
    vault: Optional[credentials.Vault] = None
    settings: Optional[configuration.OperatorSettings] = None


class LogFormatParamType(click.Choice):

    def __init__(self) -> None:
        super().__init__(choices=[v.name.lower() for v in loggers.LogFormat])

    def convert(self, value: Any, param: Any, ctx: Any) -> loggers.LogFormat:
        if isinstance(value, loggers.LogFormat):
            return value
        name: str = super().convert(value, param, ctx)
        return loggers.LogFormat[name.upper()]


def logging_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """ A decorator to configure logging in all commands the same way."""
    @click.option('-v', '--verbose', is_flag=True)
    @click.option('-d', '--debug', is_flag=True)
    @click.option('-q', '--quiet', is_flag=True)
    @click.option('--log-format', type=LogFormatParamType(), default='full')
    @click.option('--log-refkey', type=str)
    @click.option('--log-prefix/--no-log-prefix', default=None)
    @functools.wraps(fn)  # to preserve other opts/args
    def wrapper(verbose: bool, quiet: bool, debug: bool,
                log_format: loggers.LogFormat = loggers.LogFormat.FULL,
                log_prefix: Optional[bool] = None,
                log_refkey: Optional[str] = None,
                *args: Any, **kwargs: Any) -> Any:
        loggers.configure(debug=debug, verbose=verbose, quiet=quiet,
                          log_format=log_format, log_refkey=log_refkey, log_prefix=log_prefix)
        return fn(*args, **kwargs)

    return wrapper


@click.version_option(prog_name='machinehealth')
@click.group(name='machinehealth', context_settings=dict(
    auto_envvar_prefix='MACHINEHEALTH',
))
def main() -> None:
    pass


@main.command()
@logging_options
@click.option('-A', '--all-namespaces', 'clusterwide', is_flag=True)
@click.option('-n', '--namespace', 'namespaces', multiple=True)
@click.option('-w', '--worker-limit', type=click.IntRange(min=1))
@click.option('--node-startup-timeout', type=click.FloatRange(min=0))
@click.option('--no-events', 'no_events', is_flag=True)
@click.option('-L', '--liveness', 'liveness_endpoint', type=str)
@click.make_pass_decorator(CLIControls, ensure=True)
def run(
        __controls: CLIControls,
        namespaces: Collection[references.NamespaceName],
        clusterwide: bool,
        worker_limit: Optional[int],
        node_startup_timeout: Optional[float],
        no_events: bool,
        liveness_endpoint: Optional[str],
) -> None:
    """ Start the health checks controller and reconcile all the health checks. """
    if namespaces and clusterwide:
        raise click.UsageError("Either --namespace or --all-namespaces can be used, not both.")

    settings = __controls.settings if __controls.settings is not None else \
        configuration.OperatorSettings()
    if worker_limit is not None:
        settings.queueing.worker_limit = worker_limit
    if node_startup_timeout is not None:
        settings.healthcheck.node_startup_timeout = node_startup_timeout
    if no_events:
        settings.posting.enabled = False

    return running.run(
        namespaces=namespaces,
        clusterwide=clusterwide,
        liveness_endpoint=liveness_endpoint,
        settings=settings,
        stop_flag=__controls.stop_flag,
        ready_flag=__controls.ready_flag,
        vault=__controls.vault,
    )
