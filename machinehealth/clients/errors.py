"""
Errors of the Kubernetes API, with aiohttp's errors chained as their causes.

Only the statuses that the controller reacts to get their own classes:
401 for the re-authentication, 404 for the vanished objects, and the rest
for readability in the logs. The network and TLS errors are not wrapped.
"""
from typing import Any, Mapping, Optional

import aiohttp


class APIError(Exception):

    def __init__(self, payload: Optional[Mapping[str, Any]], *, status: int) -> None:
        self.status = status
        self.payload = dict(payload or {})
        super().__init__(self.message, self.payload or None)

    @property
    def code(self) -> Optional[int]:
        return self.payload.get('code')

    @property
    def message(self) -> Optional[str]:
        return self.payload.get('message')

    @property
    def details(self) -> Optional[Mapping[str, Any]]:
        return self.payload.get('details')


class APIUnauthorizedError(APIError):
    pass


class APIForbiddenError(APIError):
    pass


class APINotFoundError(APIError):
    pass


class APIConflictError(APIError):
    pass


_ERRORS_BY_STATUS = {
    401: APIUnauthorizedError,
    403: APIForbiddenError,
    404: APINotFoundError,
    409: APIConflictError,
}


async def check_response(response: aiohttp.ClientResponse) -> None:
    if response.status < 400:
        return

    # Anything but a Status object can contain secrets, so it is not kept.
    try:
        payload = await response.json(content_type=None)
    except (ValueError, aiohttp.ClientError):
        payload = None
    if not isinstance(payload, Mapping) or payload.get('kind') != 'Status':
        payload = None

    cls = _ERRORS_BY_STATUS.get(response.status, APIError)
    try:
        response.raise_for_status()
    except aiohttp.ClientResponseError as e:
        raise cls(payload, status=response.status) from e


async def parse_response(response: aiohttp.ClientResponse) -> Any:
    await check_response(response)
    return await response.json()
