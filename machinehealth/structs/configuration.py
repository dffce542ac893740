"""
All configuration flags, options, settings to fine-tune the controller.

All settings are grouped semantically just for convenience
(instead of a flat mega-object with all the values in it).

The settings are created once per operator, optionally adjusted by the CLI
options before the operator starts, and then passed to all the tasks.
They can be changed at runtime, but it is not guaranteed that the changes
are noticed by the already running activities.
"""
import dataclasses
import logging
from typing import Iterable, Optional


@dataclasses.dataclass
class PostingSettings:

    enabled: bool = True
    """
    Should the notable occasions be sent as Kubernetes Events for an object.
    The events can be seen in ``kubectl describe`` output for the object.
    """

    level: int = logging.INFO
    """
    A minimal level of the events that will be posted as K8s Events.
    The default is ``logging.INFO`` (i.e. all info, warning, errors are posted).
    """


@dataclasses.dataclass
class WatchingSettings:

    server_timeout: Optional[float] = None
    """
    The maximum duration of one streaming request. Patched in some tests.
    If ``None``, then obey the server-side timeouts (they seem to be random).
    """

    client_timeout: Optional[float] = None
    """
    An HTTP/HTTPS session timeout to use in watch requests.
    """

    connect_timeout: Optional[float] = None
    """
    An HTTP/HTTPS connection timeout to use in watch requests.
    """

    reconnect_backoff: float = 0.1
    """
    How long should a pause be between watch requests (to prevent API flooding).
    """


@dataclasses.dataclass
class QueueingSettings:
    """
    Settings for how the reconciliation requests are queued and processed.
    """

    worker_limit: int = 10
    """
    How many policies can be reconciled simultaneously.
    A single policy is never reconciled by two workers at the same time.
    """

    error_delays: Iterable[float] = tuple(min(0.1 * 2 ** n, 1000.0) for n in range(15))
    """
    Backoff intervals for the reconciliation requests that have failed.

    Every further failure of the same policy leads to the next, bigger delay;
    the last value is repeated when the intervals are exhausted.
    Every success resets the backoff intervals for that policy.
    """


@dataclasses.dataclass
class RemoteSettings:
    """
    Settings for the access to the target (workload) clusters.
    """

    secret_suffix: str = '-kubeconfig'
    """
    The suffix of the secret's name with the kubeconfig of the target cluster.
    The secret is looked up in the cluster's namespace by the cluster's name.
    """

    secret_key: str = 'value'
    """
    The key in the secret's data with the base64-encoded kubeconfig YAML.
    """

    sync_timeout: Optional[float] = 60.0
    """
    How long to wait for the initial listing of the nodes in a target cluster
    before the node watch is considered as failed to start.
    """

    error_backoff: float = 5.0
    """
    How long to wait before re-establishing a failed node watch.
    """


@dataclasses.dataclass
class HealthCheckSettings:

    node_startup_timeout: float = 10 * 60
    """
    How long a machine can live without a node before it is considered
    unhealthy, if not set in the health check policy itself.
    """


@dataclasses.dataclass
class OperatorSettings:
    posting: PostingSettings = dataclasses.field(default_factory=PostingSettings)
    watching: WatchingSettings = dataclasses.field(default_factory=WatchingSettings)
    queueing: QueueingSettings = dataclasses.field(default_factory=QueueingSettings)
    remote: RemoteSettings = dataclasses.field(default_factory=RemoteSettings)
    healthcheck: HealthCheckSettings = dataclasses.field(default_factory=HealthCheckSettings)
