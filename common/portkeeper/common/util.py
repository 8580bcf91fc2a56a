import asyncio
import contextlib


@contextlib.contextmanager
def stop_on_signals(stop: asyncio.Event, *signums):
    """
    Context manager that sets the stop event when any of the given signals is received.

    Receiving a signal more than once is harmless.
    """
    loop = asyncio.get_running_loop()
    for signum in signums:
        loop.add_signal_handler(signum, stop.set)
    try:
        yield stop
    finally:
        for signum in signums:
            loop.remove_signal_handler(signum)
