import asyncio
import functools

import urllib3.exceptions


#: Exceptions that indicate the cluster could not be reached in time
TIMEOUT_ERRORS = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    urllib3.exceptions.TimeoutError,
    urllib3.exceptions.NewConnectionError,
    urllib3.exceptions.ProtocolError,
)


def is_timeout(exc: BaseException) -> bool:
    """
    Returns true if the given exception represents a timeout or connectivity problem.

    Wrapped exceptions are unwrapped, so an error raised from a timeout is itself
    considered a timeout.
    """
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, TIMEOUT_ERRORS):
            return True
        # urllib3 reports exhausted retries with the last underlying error as the reason
        if isinstance(exc, urllib3.exceptions.MaxRetryError):
            return exc.reason is None or is_timeout(exc.reason)
        exc = exc.__cause__ or exc.__context__
    return False


async def wait_for_stop(stop: asyncio.Event, timeout: float) -> bool:
    """
    Waits for up to the given timeout for the stop event to be set.

    Returns true if the event was set, false if the timeout elapsed first.
    """
    if stop.is_set():
        return True
    try:
        await asyncio.wait_for(stop.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    else:
        return True


def _resolve_future(future, task):
    if not future.done():
        try:
            # Try to resolve the future with the result of the task
            future.set_result(task.result())
        except BaseException as exc:
            # If the task raises an exception, resolve with that
            future.set_exception(exc)


async def task_cancel_and_wait(task):
    """
    Cancel the task and wait for it to exit.
    """
    # We cannot wait on the task directly as we want this function to be cancellable
    # e.g. the task might be shielded from cancellation
    # Instead, we make a future that completes when the task completes and wait on that
    loop = asyncio.get_running_loop()
    future = loop.create_future()
    callback = functools.partial(_resolve_future, future)
    task.add_done_callback(callback)

    try:
        # Cancel the task, but wait on our proxy future
        task.cancel()
        await future
    except asyncio.CancelledError:
        # Suppress the cancelled exception as we no longer need it
        pass
    finally:
        task.remove_done_callback(callback)
