"""
List-then-watch streams of the objects.

A stream yields the listed objects as events with no type, then
`Bookmark.LISTED`, then the real watch-events since the list's version.
The server closes the watch requests from time to time: they are reopened
from the latest seen version. When that version is too old (410 Gone),
the objects are listed again, and the consumer gets a new `Bookmark.LISTED`.

The management cluster's streams use the vault's credentials;
the target clusters' node streams pass their own ``context=``.
"""
import asyncio
import enum
import json
import logging
from typing import AsyncIterator, Dict, Optional, Union

import aiohttp

from machinehealth.clients import auth, errors, fetching
from machinehealth.structs import bodies, configuration, references

logger = logging.getLogger(__name__)

WATCH_EVENT_TYPES = frozenset({'ADDED', 'MODIFIED', 'DELETED'})


class WatchingError(Exception):
    """ The API has reported an error other than an outdated version. """


class Bookmark(enum.Enum):
    LISTED = enum.auto()


async def infinite_watch(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        context: Optional[auth.APIContext] = None,
        _iterations: Optional[int] = None,  # for tests only
) -> AsyncIterator[Union[Bookmark, bodies.RawEvent]]:
    """ Re-list and re-watch forever; only the errors end the stream. """
    where = f"{resource} in {namespace!r}" if namespace is not None else f"{resource} cluster-wide"
    logger.debug(f"Starting the watch-stream for {where}.")
    try:
        while _iterations is None or _iterations > 0:
            if _iterations is not None:
                _iterations -= 1
            async for raw_event in continuous_watch(settings=settings, resource=resource,
                                                    namespace=namespace, context=context):
                yield raw_event
            logger.debug(f"Re-listing {where} in {settings.watching.reconnect_backoff}s.")
            await asyncio.sleep(settings.watching.reconnect_backoff)
    finally:
        logger.debug(f"Stopping the watch-stream for {where}.")


async def continuous_watch(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        context: Optional[auth.APIContext] = None,
) -> AsyncIterator[Union[Bookmark, bodies.RawEvent]]:
    """ List once, then watch until the listed version becomes outdated. """
    items, version = await fetching.list_objs_rv(resource=resource, namespace=namespace,
                                                 context=context)
    for item in items:
        yield {'type': None, 'object': item}
    yield Bookmark.LISTED

    while True:
        async for raw_input in watch_objs(settings=settings, resource=resource,
                                          namespace=namespace, since=version,
                                          timeout=settings.watching.server_timeout,
                                          context=context):
            raw_type, raw_object = raw_input['type'], raw_input['object']
            if raw_type == 'ERROR':
                if raw_object.get('code') == 410:
                    return
                raise WatchingError(f"Error in the watch-stream: {raw_object}")
            if raw_type not in WATCH_EVENT_TYPES:
                logger.warning("Ignoring an unsupported event type: %r", raw_input)
                continue

            version = raw_object.get('metadata', {}).get('resourceVersion', version)
            yield raw_input


@auth.authenticated_stream
async def watch_objs(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        since: Optional[str] = None,
        timeout: Optional[float] = None,
        context: auth.APIContext,
) -> AsyncIterator[bodies.RawInput]:
    """
    One watch request; it ends when the server or the network closes it.

    A closed connection is a normal end here: the caller reopens it.
    """
    params: Dict[str, str] = {'watch': 'true'}
    if since is not None:
        params['resourceVersion'] = since
    if timeout is not None:
        params['timeoutSeconds'] = str(timeout)

    url = resource.get_url(server=context.server, namespace=namespace, params=params)
    client_timeout = aiohttp.ClientTimeout(total=settings.watching.client_timeout,
                                           sock_connect=settings.watching.connect_timeout)
    try:
        response = await context.session.get(url, timeout=client_timeout)
        await errors.check_response(response)
        async with response:
            async for line in _iter_jsonlines(response.content):
                yield json.loads(line)
    except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError):
        pass


async def _iter_jsonlines(
        content: aiohttp.StreamReader,
        chunk_size: int = 1024 * 1024,
) -> AsyncIterator[bytes]:
    """
    Split the response into lines.

    aiohttp's own line iteration fails on lines above 128 KB, while
    the nodes with many images in their status are bigger than that.
    """
    tail = b''
    async for chunk in content.iter_chunked(chunk_size):
        *lines, tail = (tail + chunk).split(b'\n')
        for line in lines:
            if line:
                yield line
    if tail:
        yield tail
