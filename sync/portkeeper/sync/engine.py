import asyncio
import dataclasses
import enum
import logging
import typing as t

from . import errors, model, util
from .clients import ClientProvider, ClusterClient, ServiceWatch
from .listeners import ListenerTracker


@enum.unique
class State(enum.Enum):
    """
    Represents the connection state of the engine.
    """
    #: The cluster configuration has not been loaded
    NO_CONFIG = "NoConfig"
    #: The configuration has been loaded but there is no client
    DISCONNECTED = "Disconnected"
    #: There is a client but the service watch is not open
    CONNECTED = "Connected"
    #: The service watch is open and events are being processed
    WATCHING = "Watching"


@dataclasses.dataclass
class SyncContext:
    """
    The data carried between the states of the engine.
    """
    #: The current state
    state: State = State.NO_CONFIG
    #: The loaded cluster configuration
    cluster_config: t.Any = None
    #: The client constructed from the configuration
    client: t.Optional[ClusterClient] = None
    #: The open service watch
    watch: t.Optional[ServiceWatch] = None


class NodePortSyncEngine:
    """
    Watches the services in a cluster and keeps a listener open on the local address
    for every node port.

    Transient errors, i.e. a missing configuration file, an unreachable API server or
    a broken watch, are retried after a fixed interval. Any other error is raised.
    """
    def __init__(
        self,
        provider: ClientProvider,
        tracker: ListenerTracker,
        config_path: str,
        *,
        listen_address: str = "127.0.0.1",
        retry_interval: float = 1.0
    ):
        self.provider = provider
        self.tracker = tracker
        self.config_path = config_path
        self.listen_address = listen_address
        self.retry_interval = retry_interval
        self._context = SyncContext()
        self._logger = logging.getLogger(__name__)

    @property
    def state(self) -> State:
        return self._context.state

    async def _wait_or_stop(self, coro, stop: asyncio.Event) -> asyncio.Task:
        """
        Runs the coroutine until it completes or the stop event is set, whichever is first.

        Returns the task for the coroutine, which is cancelled if it was still running.
        """
        task = asyncio.create_task(coro)
        stop_task = asyncio.create_task(stop.wait())
        try:
            await asyncio.wait({task, stop_task}, return_when = asyncio.FIRST_COMPLETED)
        finally:
            for pending in (task, stop_task):
                if not pending.done():
                    await util.task_cancel_and_wait(pending)
        if stop.is_set() and not task.cancelled():
            # Mark any exception as retrieved, as it will be discarded
            task.exception()
        return task

    async def _disconnect(self, ctx: SyncContext):
        """
        Closes the watch and client held by the context, if present.
        """
        watch, ctx.watch = ctx.watch, None
        client, ctx.client = ctx.client, None
        if watch is not None:
            await watch.close()
        if client is not None:
            await client.close()

    async def _load_config(self, ctx: SyncContext, stop: asyncio.Event) -> State:
        try:
            ctx.cluster_config = await self.provider.load_config(self.config_path)
        except FileNotFoundError:
            self._logger.debug("Cluster config %s does not exist yet", self.config_path)
            await util.wait_for_stop(stop, self.retry_interval)
            return State.NO_CONFIG
        except errors.ConfigurationError:
            raise
        except Exception as exc:
            raise errors.ConfigurationError(
                f"could not load cluster config from {self.config_path}: {exc}"
            ) from exc
        self._logger.info("Loaded cluster config from %s", self.config_path)
        return State.DISCONNECTED

    async def _connect(self, ctx: SyncContext, stop: asyncio.Event) -> State:
        try:
            ctx.client = self.provider.create_client(ctx.cluster_config)
        except Exception as exc:
            # A client cannot be created from a bad config, however many times we try
            self._logger.error(
                "Failed to create cluster client from %s - %s",
                self.config_path,
                exc
            )
            if isinstance(exc, errors.ClientError):
                raise
            raise errors.ClientError(f"failed to create cluster client: {exc}") from exc
        return State.CONNECTED

    async def _open_watch(self, ctx: SyncContext, stop: asyncio.Event) -> State:
        task = await self._wait_or_stop(ctx.client.watch_services(), stop)
        if task.cancelled():
            return State.CONNECTED
        exc = task.exception()
        if exc is None:
            # If we were stopped in the meantime, the watch is closed on the way out
            ctx.watch = task.result()
            if stop.is_set():
                return State.CONNECTED
            self._logger.info("Watching services")
            return State.WATCHING
        if stop.is_set():
            return State.CONNECTED
        if not util.is_timeout(exc):
            self._logger.error("Failed to open service watch - %s", exc)
            if isinstance(exc, errors.SyncError):
                raise exc
            raise errors.WatchOpenError(f"failed to open service watch: {exc}") from exc
        # The API server may not be running yet
        self._logger.info("Unable to reach cluster, retrying - %s", exc)
        await self._disconnect(ctx)
        await util.wait_for_stop(stop, self.retry_interval)
        return State.DISCONNECTED

    async def _watch(self, ctx: SyncContext, stop: asyncio.Event) -> State:
        task = await self._wait_or_stop(ctx.watch.next(), stop)
        if stop.is_set():
            return State.WATCHING
        try:
            event = task.result()
        except errors.WatchError as exc:
            # Reload the config as well as reconnecting, in case the credentials changed
            self._logger.info("Service watch failed, restarting - %s", exc)
            await self._disconnect(ctx)
            await util.wait_for_stop(stop, self.retry_interval)
            return State.NO_CONFIG
        await self._process_event(event, stop)
        return State.WATCHING

    async def _process_event(self, event: model.Event, stop: asyncio.Event):
        """
        Opens or closes listeners for the node ports of the service in the event.
        """
        service = event.service
        if not service.is_node_port:
            self._logger.debug(
                "Ignoring %s event for %s/%s - not a node port service",
                event.kind.name,
                service.namespace,
                service.name
            )
            return
        if event.deleted:
            operation, action = self.tracker.remove, "close"
        else:
            operation, action = self.tracker.add, "open"
        for node_port in service.node_ports:
            if stop.is_set():
                return
            try:
                await operation(self.listen_address, node_port)
            except Exception:
                self._logger.exception(
                    "Failed to %s listener on port %d for %s/%s",
                    action,
                    node_port,
                    service.namespace,
                    service.name
                )
            else:
                self._logger.debug(
                    "Processed %s event for %s/%s - %s listener on port %d",
                    event.kind.name,
                    service.namespace,
                    service.name,
                    action,
                    node_port
                )

    async def run(self, stop: asyncio.Event):
        """
        Runs the engine until the stop event is set.

        Fatal errors are raised. The open watch and client are always closed on exit.
        """
        handlers = {
            State.NO_CONFIG: self._load_config,
            State.DISCONNECTED: self._connect,
            State.CONNECTED: self._open_watch,
            State.WATCHING: self._watch,
        }
        ctx = self._context = SyncContext()
        self._logger.info(
            "Synchronising node port listeners [config: %s, address: %s]",
            self.config_path,
            self.listen_address
        )
        try:
            while not stop.is_set():
                ctx.state = await handlers[ctx.state](ctx, stop)
        finally:
            await self._disconnect(ctx)
        self._logger.info("Stopped synchronising node port listeners")
