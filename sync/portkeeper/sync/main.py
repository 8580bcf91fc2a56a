import asyncio
import logging
import signal

from portkeeper.common.util import stop_on_signals

from . import clients, config
from .engine import NodePortSyncEngine
from .listeners import ListenerTracker
from .metrics import metrics_server
from .util import task_cancel_and_wait


logger = logging.getLogger(__name__)


async def run(config_obj: config.SyncConfig):
    """
    Synchronises node port listeners with the services in the cluster.
    """
    provider = clients.load(config_obj)
    tracker = ListenerTracker()
    engine = NodePortSyncEngine(
        provider,
        tracker,
        config_obj.kubeconfig_path,
        listen_address = config_obj.listen_address,
        retry_interval = config_obj.retry_interval
    )
    with stop_on_signals(asyncio.Event(), signal.SIGINT, signal.SIGTERM) as stop:
        tasks = [asyncio.create_task(engine.run(stop))]
        if config_obj.metrics.enabled:
            logger.info(
                "Serving metrics on %s:%d",
                config_obj.metrics.address,
                config_obj.metrics.port
            )
            tasks.append(
                asyncio.create_task(
                    metrics_server(engine, config_obj.metrics.address, config_obj.metrics.port)
                )
            )
        try:
            # The engine only exits when stopped or on a fatal error, and the metrics
            # server should run forever, so we exit as soon as either completes
            done, not_done = await asyncio.wait(tasks, return_when = asyncio.FIRST_COMPLETED)
            for task in not_done:
                await task_cancel_and_wait(task)
            for task in done:
                task.result()
        finally:
            await tracker.close()
