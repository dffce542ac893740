"""
Authenticated aiohttp sessions for the API calls.

The management cluster's calls are decorated with `authenticated`
(or `authenticated_stream`): the decorator injects the API context of
the best credentials from the vault, and if the API responds with 401,
it rejects those credentials and retries with the next ones.

The target clusters' calls pass their own ``context=`` explicitly,
and are made as is: their kubeconfigs cannot be re-authenticated.
"""
import base64
import functools
import os
import ssl
import tempfile
from contextvars import ContextVar
from typing import Any, Callable, Dict, List, Optional, TypeVar, cast

import aiohttp

from machinehealth.clients import errors
from machinehealth.structs import credentials

vault_var: ContextVar[credentials.Vault] = ContextVar('vault_var')

_F = TypeVar('_F', bound=Callable[..., Any])

USER_AGENT = 'machinehealth'


def authenticated(fn: _F) -> _F:
    @functools.wraps(fn)
    async def wrapper(*args: Any, context: Optional["APIContext"] = None, **kwargs: Any) -> Any:
        if context is not None:
            return await fn(*args, context=context, **kwargs)

        vault = vault_var.get()
        async for key, vault_context in vault.contexts(APIContext):
            try:
                return await fn(*args, context=vault_context, **kwargs)
            except errors.APIUnauthorizedError as e:
                await vault.reject(key, exc=e)
        raise credentials.LoginError("Ran out of valid credentials.")
    return cast(_F, wrapper)


def authenticated_stream(fn: _F) -> _F:
    """ Same as `authenticated`, but for the async generators. """
    @functools.wraps(fn)
    async def wrapper(*args: Any, context: Optional["APIContext"] = None, **kwargs: Any) -> Any:
        if context is not None:
            async for item in fn(*args, context=context, **kwargs):
                yield item
            return

        vault = vault_var.get()
        async for key, vault_context in vault.contexts(APIContext):
            try:
                async for item in fn(*args, context=vault_context, **kwargs):
                    yield item
                return
            except errors.APIUnauthorizedError as e:
                await vault.reject(key, exc=e)
        raise credentials.LoginError("Ran out of valid credentials.")
    return cast(_F, wrapper)


class APIContext:
    """
    An aiohttp session with the TLS and the headers of one `ConnectionInfo`.

    The client certificate and key given as data are written to temporary
    files (the ssl module loads them only from files); the files live
    until the context is closed.
    """

    def __init__(self, info: credentials.ConnectionInfo) -> None:
        super().__init__()
        self.server = info.server
        self.default_namespace = info.default_namespace
        self._tempfiles: List[str] = []
        self.session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=0, ssl=self._make_ssl_context(info)),
            headers=_make_headers(info),
            auth=aiohttp.BasicAuth(info.username, info.password)
            if info.username and info.password else None,
        )

    async def close(self) -> None:
        await self.session.close()
        for path in self._tempfiles:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
        self._tempfiles.clear()

    def _make_ssl_context(self, info: credentials.ConnectionInfo) -> ssl.SSLContext:
        _ensure_one_source('CA', info.ca_path, info.ca_data)
        context = ssl.create_default_context(
            cafile=info.ca_path,
            cadata=base64.b64decode(info.ca_data).decode('ascii') if info.ca_data else None,
        )

        certfile = self._pick_file('certificate', info.certificate_path, info.certificate_data)
        keyfile = self._pick_file('private key', info.private_key_path, info.private_key_data)
        if certfile and keyfile:
            context.load_cert_chain(certfile=certfile, keyfile=keyfile)

        if info.insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _pick_file(self, title: str, path: Optional[str], data: Optional[str]) -> Optional[str]:
        _ensure_one_source(title, path, data)
        if not data:
            return path
        with tempfile.NamedTemporaryFile(delete=False) as f:
            f.write(base64.b64decode(data))
        self._tempfiles.append(f.name)
        return f.name


def _ensure_one_source(title: str, path: Optional[str], data: Optional[str]) -> None:
    if path and data:
        raise credentials.LoginError(f"Both {title} path & data are set. Need only one.")


def _make_headers(info: credentials.ConnectionInfo) -> Dict[str, str]:
    headers = {'User-Agent': USER_AGENT}
    if info.token:
        headers['Authorization'] = f'{info.scheme or "Bearer"} {info.token}'
    elif info.scheme:
        headers['Authorization'] = info.scheme
    return headers
