"""
Credentials of the management cluster and the target clusters.

A `ConnectionInfo` carries only what a generic HTTP client needs:
the server, the TLS material, the authorization header parts, and the default
namespace. The TLS material comes either as file paths or as base64 data,
exactly as in kubeconfigs.

The management cluster's infos are kept in a `Vault`: the API clients take
the best one from it, and report it back if the API rejects it; the vault
then blocks them until the authenticator brings new infos. The target clusters'
infos come from their kubeconfig secrets and never go into the vault.
"""
import asyncio
import dataclasses
import inspect
from typing import AsyncIterator, Callable, Dict, Mapping, NewType, Optional, Set, Tuple, TypeVar

VaultKey = NewType('VaultKey', str)

_C = TypeVar('_C')


class LoginError(Exception):
    """ No usable credentials for the management cluster. """


@dataclasses.dataclass(frozen=True)
class ConnectionInfo:
    server: str  # e.g. "https://10.0.0.1:6443"
    ca_path: Optional[str] = None
    ca_data: Optional[str] = None  # base64
    insecure: Optional[bool] = None
    username: Optional[str] = None
    password: Optional[str] = None
    scheme: Optional[str] = None  # "Bearer" if only the token is set
    token: Optional[str] = None
    certificate_path: Optional[str] = None
    certificate_data: Optional[str] = None  # base64
    private_key_path: Optional[str] = None
    private_key_data: Optional[str] = None  # base64
    default_namespace: Optional[str] = None
    priority: int = 0


class Vault:
    """
    The currently valid credentials of the management cluster.

    An empty vault is "not ready": the authenticator wakes up on that,
    and the API clients sleep until it is ready again. A rejected info is never
    accepted back, so that a broken login method cannot loop forever.
    """

    def __init__(self, infos: Optional[Mapping[str, ConnectionInfo]] = None) -> None:
        super().__init__()
        self._infos: Dict[VaultKey, ConnectionInfo] = {}
        self._contexts: Dict[VaultKey, object] = {}
        self._rejected: Set[ConnectionInfo] = set()
        self._changed = asyncio.Condition()
        self._add(infos or {})
        self._ready = bool(self._infos)

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {sorted(self._infos)!r}>'

    def __bool__(self) -> bool:
        return bool(self._infos)

    def select(self) -> Tuple[VaultKey, ConnectionInfo]:
        if not self._infos:
            raise LoginError("No valid credentials are available.")
        return max(self._infos.items(), key=lambda pair: pair[1].priority)

    async def contexts(
            self,
            factory: Callable[[ConnectionInfo], _C],
    ) -> AsyncIterator[Tuple[VaultKey, _C]]:
        """
        Yield the API contexts of the best infos, one at a time.

        The contexts are built once per info and kept until the info is rejected
        or the vault is closed. The iteration goes on only if the consumer
        rejects the yielded key; if it is still valid, the iteration ends.
        """
        while True:
            async with self._changed:
                await self._changed.wait_for(lambda: self._ready)
            key, info = self.select()
            if key not in self._contexts:
                self._contexts[key] = factory(info)
            context: _C = self._contexts[key]  # type: ignore
            yield key, context
            if self._infos.get(key) is info:
                break

    async def reject(self, key: VaultKey, *, exc: Optional[BaseException] = None) -> None:
        """
        Drop the failed info, and wait for the re-authentication if none are left.

        If the re-authentication brings nothing either, the original error
        is re-raised in the caller.
        """
        info = self._infos.pop(key, None)
        context = self._contexts.pop(key, None)
        if info is not None:
            self._rejected.add(info)
        await _close(context)

        if not self._infos:
            async with self._changed:
                self._ready = False
                self._changed.notify_all()
                await self._changed.wait_for(lambda: self._ready)
            if not self._infos and exc is not None:
                raise exc

    async def populate(self, infos: Mapping[str, ConnectionInfo]) -> None:
        """ Accept the fresh infos (maybe none) and wake up the waiting clients. """
        self._add(infos)
        async with self._changed:
            self._ready = True
            self._changed.notify_all()

    async def wait_for_emptiness(self) -> None:
        async with self._changed:
            await self._changed.wait_for(lambda: not self._ready)

    async def close(self) -> None:
        contexts, self._contexts = self._contexts, {}
        for context in contexts.values():
            await _close(context)

    def _add(self, infos: Mapping[str, ConnectionInfo]) -> None:
        for key, info in infos.items():
            if not isinstance(info, ConnectionInfo):
                raise ValueError(f"Not a connection info for {key!r}: {info!r}")
            if info not in self._rejected:
                self._infos[VaultKey(str(key))] = info


async def _close(context: object) -> None:
    close = getattr(context, 'close', None)
    if close is not None:
        result = close()
        if inspect.isawaitable(result):
            await result
