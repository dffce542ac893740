"""
The reconciliation requests queueing and processing.

All the changes seen in the watch-streams end up as requests to reconcile
specific health checks, identified by their namespaces & names only:
the reconciliation is level-triggered, it re-reads everything it needs
from the caches, so the content of the changes does not matter.

The queue follows the usual semantics of the Kubernetes controllers:

* A key is stored only once while it is waiting for processing,
  no matter how many times it is added (the changes are coalesced).
* A key is never processed by two workers at the same time: if it is added
  while being processed, it is re-processed once the current run is over.
* The delayed additions keep the earliest deadline of all requested.
* The failed keys are retried with per-key exponential backoff;
  the successful ones forget their backoff history.

The processing itself is done by a limited number of workers,
all running as fire-and-forget jobs in an `aiojobs` scheduler.
"""
import asyncio
import contextlib
import dataclasses
import itertools
import logging
from typing import Dict, Optional, Set

import aiojobs
from typing_extensions import Protocol, TypedDict

from machinehealth.structs import configuration, references

logger = logging.getLogger(__name__)


# This should be aiojobs' type, but they do not provide it. So, we simulate it.
class _aiojobs_Context(TypedDict, total=False):
    exception: BaseException


@dataclasses.dataclass(frozen=True)
class Result:
    """
    The outcome of one successful reconciliation.

    If ``requeue_after`` is set, the same key is reconciled again
    after that many seconds even if nothing changes in the meantime.
    """
    requeue_after: Optional[float] = None


class Reconciler(Protocol):
    async def __call__(
            self,
            key: references.ObjectKey,
    ) -> Result: ...


class ReconcileQueue:
    """
    A de-duplicating queue of the keys to be reconciled.
    """

    def __init__(self) -> None:
        super().__init__()
        self._queue: "asyncio.Queue[references.ObjectKey]" = asyncio.Queue()
        self._dirty: Set[references.ObjectKey] = set()
        self._processing: Set[references.ObjectKey] = set()
        self._delayed: Dict[references.ObjectKey, asyncio.TimerHandle] = {}
        self._failures: Dict[references.ObjectKey, int] = {}

    def __repr__(self) -> str:
        return (f'<{self.__class__.__name__}: {len(self._dirty)} pending, '
                f'{len(self._processing)} processing, {len(self._delayed)} delayed>')

    def __len__(self) -> int:
        return len(self._dirty)

    def __contains__(self, key: object) -> bool:
        return key in self._dirty

    @property
    def processing(self) -> Set[references.ObjectKey]:
        return set(self._processing)

    @property
    def delayed(self) -> Dict[references.ObjectKey, float]:
        """ The delayed keys with their deadlines (in the event loop's time). """
        return {key: handle.when() for key, handle in self._delayed.items()}

    def add(self, key: references.ObjectKey) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.put_nowait(key)

    def add_after(self, key: references.ObjectKey, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._delayed.get(key)
        if existing is not None and existing.when() <= deadline:
            return
        if existing is not None:
            existing.cancel()
        self._delayed[key] = loop.call_at(deadline, self._fire, key)

    def add_rate_limited(
            self,
            key: references.ObjectKey,
            *,
            settings: configuration.OperatorSettings,
    ) -> float:
        """
        Re-add the failed key after a growing delay; return the delay.
        """
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delays = list(settings.queueing.error_delays)
        delay = delays[min(failures, len(delays) - 1)] if delays else 0.0
        self.add_after(key, delay)
        return delay

    def forget(self, key: references.ObjectKey) -> None:
        self._failures.pop(key, None)

    def failures(self, key: references.ObjectKey) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> references.ObjectKey:
        """
        Wait for the next key and mark it as being processed.
        """
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: references.ObjectKey) -> None:
        """
        Mark the key as processed; re-queue it if it was added meanwhile.
        """
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    def close(self) -> None:
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()

    def _fire(self, key: references.ObjectKey) -> None:
        self._delayed.pop(key, None)
        self.add(key)


async def dispatcher(
        *,
        queue: ReconcileQueue,
        reconciler: Reconciler,
        settings: configuration.OperatorSettings,
) -> None:
    """
    Take the keys from the queue and reconcile them in the limited workers.

    The dispatcher is a never-ending task. The reconciliation errors are
    retried by the workers; only the unexpected failures of the workers
    themselves stop the dispatcher (and the operator).
    """

    # In case of a failed worker, stop the dispatcher, and escalate to the operator to stop it.
    dispatcher_task = asyncio.current_task()
    worker_error: Optional[BaseException] = None
    def exception_handler(scheduler: aiojobs.Scheduler, context: _aiojobs_Context) -> None:
        nonlocal worker_error
        if worker_error is None:
            worker_error = context.get('exception')
            if dispatcher_task is not None:  # never happens, but is needed for type-checking.
                dispatcher_task.cancel()

    scheduler = aiojobs.Scheduler(limit=settings.queueing.worker_limit,
                                  exception_handler=exception_handler)
    try:
        for iteration in itertools.count():
            key = await queue.get()
            await scheduler.spawn(worker(
                key=key,
                queue=queue,
                reconciler=reconciler,
                settings=settings,
            ))

    except asyncio.CancelledError:
        if worker_error is None:
            raise
        else:
            raise RuntimeError("Reconciliation has failed with an unrecoverable error. "
                               "The operator will stop to prevent damage.") from worker_error
    finally:
        queue.close()

        # Terminate all the fire-and-forget jobs if they are still running.
        # Ensure the scheduler is closed even if the dispatcher is double-cancelled (e.g. in tests).
        closing_task = asyncio.create_task(scheduler.close())
        while not closing_task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(closing_task)


async def worker(
        *,
        key: references.ObjectKey,
        queue: ReconcileQueue,
        reconciler: Reconciler,
        settings: configuration.OperatorSettings,
) -> None:
    """
    Reconcile one key once, and schedule its next reconciliation if needed.

    The reconciliation errors are expected (e.g. the API is unavailable)
    and are retried with backoff; they do not stop the operator.
    """
    try:
        result = await reconciler(key)
    except Exception as e:
        delay = queue.add_rate_limited(key, settings=settings)
        logger.error(f"Reconciliation of {key} has failed, retrying in {delay:.1f}s: {e}")
    else:
        queue.forget(key)
        if result.requeue_after is not None and result.requeue_after > 0:
            queue.add_after(key, result.requeue_after)
    finally:
        queue.done(key)
