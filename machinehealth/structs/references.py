"""
The resource kinds and the object identities used by the controller.

Only a handful of kinds are ever addressed: the Cluster API kinds and
the secrets & events in the management cluster, the nodes in the target
clusters. They are all declared here, with their URL building.
"""
import dataclasses
import urllib.parse
from typing import FrozenSet, Mapping, NamedTuple, NewType, Optional

NamespaceName = NewType('NamespaceName', str)

# `None` stands for the cluster-wide requests and the cluster-scoped objects.
Namespace = Optional[NamespaceName]


class ObjectKey(NamedTuple):
    namespace: Namespace
    name: str

    def __str__(self) -> str:
        return self.name if self.namespace is None else f'{self.namespace}/{self.name}'


@dataclasses.dataclass(frozen=True)
class Resource:
    """
    A kind of objects as the API serves it: ``/apis/{group}/{version}/{plural}``.

    Two resources are the same if they are served from the same URL;
    the kind, the scope and the subresources only describe them.
    """
    group: str
    version: str
    plural: str
    kind: Optional[str] = dataclasses.field(default=None, compare=False)
    namespaced: bool = dataclasses.field(default=True, compare=False)
    subresources: FrozenSet[str] = dataclasses.field(default=frozenset(), compare=False)

    def __str__(self) -> str:
        return f'{self.plural}.{self.version}.{self.group}'.rstrip('.')

    @property
    def api_version(self) -> str:
        return f'{self.group}/{self.version}' if self.group else self.version

    def get_url(
            self,
            *,
            server: Optional[str] = None,
            namespace: Namespace = None,
            name: Optional[str] = None,
            subresource: Optional[str] = None,
            params: Optional[Mapping[str, str]] = None,
    ) -> str:
        """
        Build the URL of a list (no name) or of an object (with a name).

        The namespace is ignored for the cluster-scoped resources, so that
        a node is addressed the same way with or without a namespace at hand.
        """
        if subresource is not None and name is None:
            raise ValueError(f"A subresource needs an object name: {self}/{subresource}")
        if self.namespaced and name is not None and namespace is None:
            raise ValueError(f"A namespaced object needs a namespace: {self}/{name}")

        path = '/api/v1' if not self.group else f'/apis/{self.group}/{self.version}'
        if self.namespaced and namespace is not None:
            path += f'/namespaces/{urllib.parse.quote(namespace)}'
        path += f'/{self.plural}'
        if name is not None:
            path += f'/{urllib.parse.quote(name)}'
        if subresource is not None:
            path += f'/{subresource}'
        if params:
            path += '?' + urllib.parse.urlencode(params)
        return path if server is None else server.rstrip('/') + path


CLUSTER_API_GROUP = 'cluster.x-k8s.io'
CLUSTER_API_VERSION = 'v1alpha3'
_STATUS = frozenset({'status'})

CLUSTERS = Resource(CLUSTER_API_GROUP, CLUSTER_API_VERSION, 'clusters',
                    kind='Cluster', subresources=_STATUS)
MACHINES = Resource(CLUSTER_API_GROUP, CLUSTER_API_VERSION, 'machines',
                    kind='Machine', subresources=_STATUS)
MACHINEHEALTHCHECKS = Resource(CLUSTER_API_GROUP, CLUSTER_API_VERSION, 'machinehealthchecks',
                               kind='MachineHealthCheck', subresources=_STATUS)

# Nodes live in the target clusters; secrets & events in the management cluster.
NODES = Resource('', 'v1', 'nodes', kind='Node', namespaced=False, subresources=_STATUS)
SECRETS = Resource('', 'v1', 'secrets', kind='Secret')
EVENTS = Resource('', 'v1', 'events', kind='Event')
