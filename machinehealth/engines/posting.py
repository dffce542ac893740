"""
The k8s-events of the health checks: the remediation marks and the failures.

The reconciliation only queues the events; a background poster sends them,
so that a slow or failing API never delays or fails the reconciliation.
"""
import asyncio
import logging
from contextvars import ContextVar
from typing import TYPE_CHECKING, NamedTuple, NoReturn

from machinehealth.clients import events
from machinehealth.structs import bodies, configuration

if TYPE_CHECKING:
    K8sEventQueue = asyncio.Queue["K8sEvent"]
else:
    K8sEventQueue = asyncio.Queue

# Both are set once per operator, so that the reconcilers need no extra arguments.
event_queue_var: ContextVar[K8sEventQueue] = ContextVar('event_queue_var')
settings_var: ContextVar[configuration.OperatorSettings] = ContextVar('settings_var')


class K8sEvent(NamedTuple):
    """ An event with the object's reference taken in advance: the object may be gone by then. """
    ref: bodies.ObjectReference
    type: str
    reason: str
    message: str


def enqueue(ref: bodies.ObjectReference, type: str, reason: str, message: str) -> None:
    event_queue_var.get().put_nowait(K8sEvent(ref=ref, type=type, reason=reason, message=message))


def warn(obj: bodies.RawBody, *, reason: str, message: str = '') -> None:
    settings = settings_var.get()
    if settings.posting.enabled and settings.posting.level <= logging.WARNING:
        enqueue(bodies.build_object_reference(obj), type='Warning', reason=reason, message=message)


async def poster(*, event_queue: K8sEventQueue) -> NoReturn:
    while True:
        queued = await event_queue.get()
        await events.post_event(ref=queued.ref, type=queued.type,
                                reason=queued.reason, message=queued.message)
