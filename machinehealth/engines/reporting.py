"""
The liveness endpoint: a tiny HTTP server with the controller's state in JSON.

Kubernetes restarts the pod when the endpoint stops responding. The server
lives as long as the operator's root tasks do, so a stuck or failed operator
stops answering together with them.
"""
import asyncio
import logging
import urllib.parse
from typing import Any, Dict, Optional

import aiohttp.web

from machinehealth.reactor import caching, queueing, remotes

logger = logging.getLogger(__name__)

DEFAULT_HOST = 'localhost'
DEFAULT_PORT = 80


def build_report(
        *,
        cache: caching.Cache,
        watches: remotes.ClusterWatches,
        queue: Optional[queueing.ReconcileQueue] = None,
) -> Dict[str, Any]:
    report: Dict[str, Any] = {
        'synced': cache.synced,
        'resources': {str(resource): len(store) for resource, store in cache.items()},
        'clusters': len(watches),
    }
    if queue is not None:
        report['queued'] = len(queue)
    return report


async def health_reporter(
        endpoint: str,
        *,
        cache: caching.Cache,
        watches: remotes.ClusterWatches,
        queue: Optional[queueing.ReconcileQueue] = None,
        ready_flag: Optional[asyncio.Event] = None,
) -> None:
    """
    Serve the report at the endpoint's path until cancelled.

    Only ``http://host:port/path`` endpoints are supported; the host and
    the port default to ``localhost:80``.
    """
    parts = urllib.parse.urlsplit(endpoint)
    if parts.scheme != 'http':
        raise ValueError(f"Unsupported scheme of the liveness endpoint: {endpoint}")
    host = parts.hostname or DEFAULT_HOST
    port = parts.port or DEFAULT_PORT

    async def get_health(request: aiohttp.web.Request) -> aiohttp.web.Response:
        return aiohttp.web.json_response(build_report(cache=cache, watches=watches, queue=queue))

    app = aiohttp.web.Application()
    app.router.add_get(parts.path or '/', get_health)
    runner = aiohttp.web.AppRunner(app, handle_signals=False)
    await runner.setup()
    try:
        await aiohttp.web.TCPSite(runner, host, port, shutdown_timeout=1.0).start()
        logger.debug(f"Serving the health report at http://{host}:{port}{parts.path or '/'}")
        if ready_flag is not None:
            ready_flag.set()
        await asyncio.Event().wait()
    finally:
        await asyncio.shield(runner.cleanup())
