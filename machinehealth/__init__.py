"""
The machine health checks controller for the Cluster API clusters.

It watches the ``MachineHealthCheck`` policies, the clusters and the machines
in the management cluster, and the nodes in the target clusters, and marks
the machines whose nodes are unhealthy for long enough as needing remediation.
"""
# isort: skip_file

# Unlike all other places, where we import other modules and refer
# the functions via the modules, this is the top-level interface,
# as it is seen by the users. So, we export the individual functions.

from machinehealth.reactor.queueing import (
    Result,
)
from machinehealth.reactor.reconciling import (
    AggregatedError,
    ReconciliationError,
    reconcile,
)
from machinehealth.reactor.running import (
    run,
    operator,
    spawn_tasks,
    run_tasks,
)
from machinehealth.structs.configuration import (
    OperatorSettings,
)
from machinehealth.structs.credentials import (
    LoginError,
    ConnectionInfo,
)
from machinehealth.structs.references import (
    ObjectKey,
)

__version__ = '0.1.0'

__all__ = [
    'Result',
    'AggregatedError',
    'ReconciliationError',
    'reconcile',
    'run',
    'operator',
    'spawn_tasks',
    'run_tasks',
    'OperatorSettings',
    'LoginError',
    'ConnectionInfo',
    'ObjectKey',
]
