"""
Clients for the target (workload) clusters.

Every managed cluster has its kubeconfig stored in a secret next to it,
named after the cluster with a conventional suffix (``<cluster>-kubeconfig``),
with the base64-encoded kubeconfig YAML under a conventional key (``value``).

The clients are not re-authenticated: if the credentials stop working,
the API calls fail with their regular errors, and the node watches
build new clients from the (possibly rotated) secrets.
"""
import base64
import binascii
import logging
from typing import Optional

import yaml

from machinehealth.clients import auth, fetching
from machinehealth.structs import bodies, configuration, credentials, references
from machinehealth.utilities import piggybacking

logger = logging.getLogger(__name__)


class RemoteAccessError(Exception):
    """ Raised when a client for a target cluster cannot be built. """


class ClusterClient:
    """
    A connection to one target cluster.

    The underlying API context (and its HTTP session) is created lazily
    on the first use, and must be closed explicitly when not needed anymore.
    """

    def __init__(
            self,
            info: credentials.ConnectionInfo,
            *,
            cluster: references.ObjectKey,
    ) -> None:
        super().__init__()
        self.info = info
        self.cluster = cluster
        self._context: Optional[auth.APIContext] = None

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.cluster} at {self.info.server}>'

    @property
    def context(self) -> auth.APIContext:
        if self._context is None:
            self._context = auth.APIContext(self.info)
        return self._context

    async def close(self) -> None:
        if self._context is not None:
            await self._context.close()
            self._context = None


async def build_cluster_client(
        *,
        cluster: bodies.RawBody,
        settings: configuration.OperatorSettings,
) -> ClusterClient:
    """
    Build a client for the cluster from its kubeconfig secret.
    """
    key = bodies.get_key(cluster)
    secret_name = f'{key.name}{settings.remote.secret_suffix}'
    secret = await fetching.read_obj(resource=references.SECRETS,
                                     namespace=key.namespace,
                                     name=secret_name)
    if secret is None:
        raise RemoteAccessError(f"The kubeconfig secret {secret_name!r} is absent for {key}.")

    data = secret.get('data') or {}
    encoded = data.get(settings.remote.secret_key)
    if not encoded:
        raise RemoteAccessError(f"The kubeconfig secret {secret_name!r} has no "
                                f"{settings.remote.secret_key!r} key for {key}.")

    try:
        decoded = base64.b64decode(encoded, validate=True)
        config = yaml.safe_load(decoded.decode('utf-8')) or {}
        info = piggybacking.parse_kubeconfig([config])
    except (binascii.Error, UnicodeDecodeError, yaml.YAMLError, credentials.LoginError) as e:
        raise RemoteAccessError(f"The kubeconfig secret {secret_name!r} is unusable "
                                f"for {key}: {e}") from e

    logger.debug(f"Built a client for {key} at {info.server}.")
    return ClusterClient(info, cluster=key)
