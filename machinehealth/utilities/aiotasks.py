"""
Orchestration of the long-running asyncio tasks: the operator's root tasks
and the node watches of the target clusters.

Only tasks are supported (not arbitrary awaitables): they are both awaited
and cancelled here.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Any, Collection, Coroutine, Optional, Set, Tuple, Union

if TYPE_CHECKING:
    Task = asyncio.Task[Any]
    Future = asyncio.Future[Any]
else:
    Task = asyncio.Task
    Future = asyncio.Future

Logger = Union[logging.Logger, logging.LoggerAdapter]

create_task = asyncio.create_task


def create_guarded_task(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        logger: Logger,
        finishable: bool = False,
) -> Task:
    """
    Start a task that is expected to run until cancelled, and log its ending.

    Nobody awaits such tasks until the operator exits, so their failures
    would be unseen for too long without the logs.
    """
    return asyncio.create_task(_guard(coro, name, logger=logger, finishable=finishable), name=name)


async def _guard(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        logger: Logger,
        finishable: bool,
) -> None:
    title = name[:1].upper() + name[1:]
    try:
        await coro
    except asyncio.CancelledError:
        logger.debug(f"{title} is cancelled.")
        raise
    except Exception as e:
        logger.exception(f"{title} has failed: {e}")
        raise
    if not finishable:
        logger.warning(f"{title} has exited unexpectedly.")


async def wait(
        tasks: Collection[Task],
        *,
        timeout: Optional[float] = None,
        return_when: str = asyncio.ALL_COMPLETED,
) -> Tuple[Set[Task], Set[Task]]:
    """ Same as `asyncio.wait`, but an empty collection is not an error. """
    if not tasks:
        return set(), set()
    return await asyncio.wait(tasks, timeout=timeout, return_when=return_when)


async def stop(
        tasks: Collection[Task],
        *,
        title: str,
        logger: Optional[Logger] = None,
        interval: Optional[float] = None,
) -> Set[Task]:
    """
    Cancel the tasks and wait until all of them exit; return them.

    There is no timeout: the tasks that ignore the cancellation are waited for
    forever, with a warning every ``interval`` seconds. Only a cancellation
    of the stopping itself ends it earlier.
    """
    for task in tasks:
        task.cancel()
    pending = set(tasks)
    while pending:
        _, pending = await wait(pending, timeout=interval)
        if pending and logger is not None:
            logger.warning(f"{title} tasks are not stopped yet: {sorted(t.get_name() for t in pending)}")
    if tasks and logger is not None:
        logger.debug(f"{title} tasks are stopped: {len(tasks)} in total.")
    return set(tasks)


def reraise(tasks: Collection[Task]) -> None:
    """ Re-raise the first failure of the finished tasks, if any. """
    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is not None:
            raise task.exception()  # type: ignore


def all_tasks(*, ignored: Collection[Task] = frozenset()) -> Set[Task]:
    """ All tasks of the loop except the current one and the ignored ones. """
    current = asyncio.current_task()
    return {task for task in asyncio.all_tasks() if task is not current and task not in ignored}
