"""
The credentials retriever of the management cluster.

It sleeps while the vault has usable credentials. When the API clients
reject the last of them (or when there were none from the start), it runs
all the login methods again and refills the vault, which wakes the clients.

The target clusters are not re-authenticated here: their node watches
re-read the kubeconfig secrets when the credentials are rejected.
"""
import logging
from typing import Callable, Dict, NoReturn, Optional, Sequence, Tuple

from machinehealth.structs import credentials
from machinehealth.utilities import piggybacking

logger = logging.getLogger(__name__)

LoginFn = Callable[[], Optional[credentials.ConnectionInfo]]
LoginMethods = Sequence[Tuple[str, LoginFn]]

LOGIN_METHODS: LoginMethods = (
    ('login_with_service_account', piggybacking.login_with_service_account),
    ('login_with_kubeconfig', piggybacking.login_with_kubeconfig),
)


async def authenticator(
        *,
        vault: credentials.Vault,
        methods: LoginMethods = LOGIN_METHODS,
) -> NoReturn:
    first = not vault
    while True:
        await authenticate(vault=vault, methods=methods,
                           title="Initial authentication" if first else "Re-authentication")
        first = False


async def authenticate(
        *,
        vault: credentials.Vault,
        methods: LoginMethods = LOGIN_METHODS,
        title: str = "Authentication",
) -> None:
    """ Wait until the vault is emptied, then refill it once. """
    await vault.wait_for_emptiness()
    logger.info(f"{title} has been initiated.")

    infos = login(methods)
    if infos:
        logger.info(f"{title} has finished: {', '.join(infos)}.")
    else:
        logger.warning(f"{title} has failed: no credentials were retrieved from the login methods.")

    # Even an empty result is stored: the waiting clients give up instead of hanging.
    await vault.populate(infos)


def login(methods: LoginMethods) -> Dict[str, credentials.ConnectionInfo]:
    infos: Dict[str, credentials.ConnectionInfo] = {}
    for name, method in methods:
        try:
            info = method()
        except (OSError, ValueError, credentials.LoginError) as e:
            logger.warning(f"Login method {name} has failed: {e}")
            continue
        if info is not None:
            infos[name] = info
    return infos
