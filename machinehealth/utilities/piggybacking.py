"""
Connection infos from the service account or from the kubeconfigs.

Only the static credentials are understood: tokens, client certificates,
basic auth. The exec & auth-provider plugins are not run; an auth-provider's
cached access token is used as is, if present.

The kubeconfig parsing also serves the target clusters, whose kubeconfigs
are kept by Cluster API in the ``<cluster>-kubeconfig`` secrets.
"""
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from machinehealth.structs import credentials

# The vault prefers the higher ones: in a pod, the pod's own account wins.
PRIORITY_OF_KUBECONFIG: int = 10
PRIORITY_OF_SERVICE_ACCOUNT: int = 20

SERVICE_ACCOUNT_DIR = '/var/run/secrets/kubernetes.io/serviceaccount'
IN_CLUSTER_SERVER = 'https://kubernetes.default.svc'
DEFAULT_KUBECONFIG = '~/.kube/config'


def login_with_service_account() -> Optional[credentials.ConnectionInfo]:
    """ The pod's service account, if the controller runs in a pod. """
    token = _read_optional(os.path.join(SERVICE_ACCOUNT_DIR, 'token'))
    if token is None:
        return None

    ca_path = os.path.join(SERVICE_ACCOUNT_DIR, 'ca.crt')
    return credentials.ConnectionInfo(
        server=IN_CLUSTER_SERVER,
        ca_path=ca_path if os.path.exists(ca_path) else None,
        token=token or None,
        default_namespace=_read_optional(os.path.join(SERVICE_ACCOUNT_DIR, 'namespace')) or None,
        priority=PRIORITY_OF_SERVICE_ACCOUNT,
    )


def login_with_kubeconfig() -> Optional[credentials.ConnectionInfo]:
    """
    The kubeconfigs of ``$KUBECONFIG`` (colon-separated), or ``~/.kube/config``.

    A listed file that is missing or broken fails the login: a user who
    points to a kubeconfig expects it to be used, not silently skipped.
    """
    paths = _kubeconfig_paths()
    if not paths:
        return None

    configs: List[Any] = []
    for path in paths:
        with open(path, encoding='utf-8') as f:
            configs.append(yaml.safe_load(f) or {})
    return parse_kubeconfig(configs, priority=PRIORITY_OF_KUBECONFIG)


def parse_kubeconfig(
        configs: Iterable[Mapping[str, Any]],
        *,
        priority: int = 0,
) -> credentials.ConnectionInfo:
    """
    Merge the kubeconfigs and resolve their current context.

    The earlier configs win on the conflicting names and on the current context.
    """
    current: Optional[str] = None
    sections: Dict[str, Dict[str, Any]] = {'contexts': {}, 'clusters': {}, 'users': {}}
    for config in configs:
        if not isinstance(config, Mapping):
            raise credentials.LoginError(f"A kubeconfig is not a mapping: {type(config)}")
        current = current if current is not None else config.get('current-context')
        for section, entries in sections.items():
            field = section[:-1]  # "clusters" -> "cluster", etc.
            for entry in config.get(section) or []:
                entries.setdefault(entry['name'], entry.get(field) or {})

    if current is None:
        raise credentials.LoginError("Current context is not set in kubeconfigs.")
    try:
        context = sections['contexts'][current]
        cluster = sections['clusters'][context['cluster']]
    except KeyError as e:
        raise credentials.LoginError(f"The kubeconfig is incomplete: {e} is missing.") from e
    user = sections['users'].get(context.get('user'), {})

    if not cluster.get('server'):
        raise credentials.LoginError("The kubeconfig's cluster has no server.")

    provider = user.get('auth-provider') or {}
    return credentials.ConnectionInfo(
        server=cluster['server'],
        ca_path=cluster.get('certificate-authority'),
        ca_data=cluster.get('certificate-authority-data'),
        insecure=cluster.get('insecure-skip-tls-verify'),
        certificate_path=user.get('client-certificate'),
        certificate_data=user.get('client-certificate-data'),
        private_key_path=user.get('client-key'),
        private_key_data=user.get('client-key-data'),
        username=user.get('username'),
        password=user.get('password'),
        token=user.get('token') or (provider.get('config') or {}).get('access-token'),
        default_namespace=context.get('namespace'),
        priority=priority,
    )


def _kubeconfig_paths() -> List[str]:
    envvar = os.environ.get('KUBECONFIG')
    if envvar:
        return [os.path.expanduser(path) for path in envvar.split(os.pathsep) if path.strip()]
    default = os.path.expanduser(DEFAULT_KUBECONFIG)
    return [default] if os.path.exists(default) else []


def _read_optional(path: str) -> Optional[str]:
    if not os.path.exists(path):
        return None
    with open(path, encoding='utf-8') as f:
        return f.read().strip()
