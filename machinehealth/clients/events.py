"""
Posting of the k8s-events (``kubectl describe`` shows them for the objects).

The events are informational: an API failure to accept one is logged
and ignored. Only the unexpected errors are escalated.
"""
import datetime
import logging

import aiohttp

from machinehealth.clients import auth, errors
from machinehealth.structs import bodies, references

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1024
CUT_MESSAGE_INFIX = '...'

COMPONENT = 'machinehealthcheck-controller'


@auth.authenticated
async def post_event(
        *,
        ref: bodies.ObjectReference,
        type: str,
        reason: str,
        message: str = '',
        resource: references.Resource = references.EVENTS,
        context: auth.APIContext,
) -> None:
    if ref.get('apiVersion') == 'v1' and ref.get('kind') == 'Event':
        return  # an event about an event would start an endless chain

    # The events of cluster-scoped objects (nodes) go to the default namespace.
    namespace = ref.get('namespace') or context.default_namespace or 'default'
    message = _shorten(message)
    timestamp = datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')
    body = {
        'metadata': {'namespace': namespace, 'generateName': 'machinehealth-event-'},
        'involvedObject': {**ref, 'namespace': namespace},
        'action': 'Reconcile',
        'type': type,
        'reason': reason,
        'message': message,
        'source': {'component': COMPONENT},
        'reportingComponent': COMPONENT,
        'reportingInstance': COMPONENT,
        'firstTimestamp': timestamp,
        'lastTimestamp': timestamp,
        'eventTime': timestamp,
    }

    url = resource.get_url(server=context.server, namespace=namespace)
    try:
        response = await context.session.post(url, json=body)
        await errors.check_response(response)
    except errors.APIError as e:
        logger.warning(f"Failed to post an event. Ignoring and continuing. "
                       f"Status: {e.status}. Message: {e.message}. "
                       f"Event: type={type!r}, reason={reason!r}, message={message!r}.")
    except (aiohttp.ClientOSError, aiohttp.ServerDisconnectedError) as e:
        logger.warning(f"Failed to post an event. Ignoring and continuing. "
                       f"Connection error: {e}. "
                       f"Event: type={type!r}, reason={reason!r}, message={message!r}.")


def _shorten(message: str) -> str:
    """ Cut the middle of a too long message; the API rejects such events. """
    if len(message) <= MAX_MESSAGE_LENGTH:
        return message
    head = (MAX_MESSAGE_LENGTH - len(CUT_MESSAGE_INFIX)) // 2
    tail = MAX_MESSAGE_LENGTH - len(CUT_MESSAGE_INFIX) - head
    return f'{message[:head]}{CUT_MESSAGE_INFIX}{message[-tail:]}'
