import asyncio
import logging
import typing as t

from .. import config, errors, model, util


class ServiceWatch:
    """
    An open watch over the services in a cluster.

    A reader task consumes the underlying event stream and places each event on a single
    queue. If the stream breaks or ends, the error is placed on the same queue, so that
    events and the terminal error are delivered in the order they arrived.
    """
    def __init__(self, events: t.AsyncIterable[model.Event]):
        self._logger = logging.getLogger(__name__)
        self._queue: asyncio.Queue[t.Union[model.Event, errors.WatchError]] = asyncio.Queue()
        self._task = asyncio.create_task(self._read(events))

    async def _read(self, events):
        try:
            async for event in events:
                self._queue.put_nowait(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.debug("Service watch failed", exc_info = True)
            error = errors.WatchError(f"service watch failed: {exc}")
            error.__cause__ = exc
            self._queue.put_nowait(error)
        else:
            self._queue.put_nowait(errors.WatchError("service watch ended"))

    async def next(self) -> model.Event:
        """
        Returns the next event from the watch.

        Raises WatchError if the watch has broken.
        """
        item = await self._queue.get()
        if isinstance(item, errors.WatchError):
            raise item
        return item

    async def close(self):
        """
        Stops the watch and waits for the reader to exit.

        Closing a watch more than once is permitted.
        """
        if not self._task.done():
            await util.task_cancel_and_wait(self._task)


class ClusterClient:
    """
    A client for a cluster, constructed from a loaded configuration.
    """
    async def watch_services(self) -> ServiceWatch:
        """
        Opens a watch over the services in the cluster.

        The current services are delivered first as CREATED events, followed by
        events for each subsequent change.
        """
        raise NotImplementedError

    async def close(self):
        """
        Releases any resources held by the client.
        """


class ClientProvider:
    """
    Loads cluster configuration and constructs clients from it.
    """
    async def load_config(self, path: str) -> t.Any:
        """
        Loads the cluster configuration at the given path.

        Raises FileNotFoundError if the file does not exist.
        """
        raise NotImplementedError

    def create_client(self, cluster_config: t.Any) -> ClusterClient:
        """
        Constructs a client from a loaded cluster configuration.
        """
        raise NotImplementedError

    @classmethod
    def from_config(cls, config_obj: config.SyncConfig) -> "ClientProvider":
        """
        Initialises an instance of the provider from a config object.
        """
        raise NotImplementedError
