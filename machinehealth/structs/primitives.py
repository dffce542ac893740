"""
The start/stop flags of the operator, as passed by embedding applications.

The operator can be embedded into a thread or into another event loop,
so both the asyncio and the threading/concurrent primitives are accepted.
"""
import asyncio
import concurrent.futures
import threading
from typing import Optional, Union

Flag = Union[asyncio.Event, asyncio.Future, threading.Event, concurrent.futures.Future]


async def wait_flag(flag: Optional[Flag]) -> None:
    """ Block until the flag is raised; a missing flag blocks nothing. """
    if flag is None:
        return
    if isinstance(flag, asyncio.Event):
        await flag.wait()
    elif isinstance(flag, asyncio.Future):
        await flag
    elif isinstance(flag, threading.Event):
        await asyncio.to_thread(flag.wait)
    elif isinstance(flag, concurrent.futures.Future):
        await asyncio.wrap_future(flag)
    else:
        raise TypeError(f"A flag of an unsupported type: {flag!r}")


def raise_flag(flag: Optional[Flag]) -> None:
    if flag is None:
        return
    if isinstance(flag, (asyncio.Event, threading.Event)):
        flag.set()
    elif isinstance(flag, (asyncio.Future, concurrent.futures.Future)):
        if not flag.done():
            flag.set_result(None)
    else:
        raise TypeError(f"A flag of an unsupported type: {flag!r}")
