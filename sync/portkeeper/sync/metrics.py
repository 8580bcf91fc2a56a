import asyncio
import functools
import typing

from aiohttp import web

if typing.TYPE_CHECKING:
    from .engine import NodePortSyncEngine


class InfoMetric:
    """
    An OpenMetrics info metric, where each sample is a set of labels with the value 1.
    """
    prefix = "portkeeper_sync"

    def __init__(self, suffix: str, description: str):
        self.name = f"{self.prefix}_{suffix}"
        self.description = description
        self.samples: typing.List[typing.Dict[str, typing.Any]] = []

    def add_sample(self, **labels):
        self.samples.append(labels)


def escape(content):
    """
    Escape the given content for use in metric output.
    """
    return str(content).replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


def render_openmetrics(*metrics: InfoMetric) -> typing.Tuple[str, bytes]:
    """
    Renders the metrics using OpenMetrics text format.
    """
    output = []
    for metric in metrics:
        output.append(f"# HELP {metric.name} {escape(metric.description)}\n")
        output.append(f"# TYPE {metric.name} info\n")
        for labels in metric.samples:
            labelstr = ",".join(f'{k}="{escape(v)}"' for k, v in sorted(labels.items()))
            output.append(f"{metric.name}{{{labelstr}}} 1\n")
    output.append("# EOF\n")
    return (
        "application/openmetrics-text; version=1.0.0; charset=utf-8",
        "".join(output).encode("utf-8"),
    )


def collect(engine: 'NodePortSyncEngine') -> typing.List[InfoMetric]:
    """
    Collects the metrics for the given engine.
    """
    state = InfoMetric("state_info", "The connection state of the node port sync engine")
    state.add_sample(state = engine.state.value)
    listeners = InfoMetric("listener_info", "Information about the open node port listeners")
    for address, port in engine.tracker.keys():
        listeners.add_sample(address = address, port = port)
    return [state, listeners]


async def metrics_handler(engine: 'NodePortSyncEngine', request):
    """
    Produce metrics for the engine.
    """
    content_type, content = render_openmetrics(*collect(engine))
    return web.Response(headers = {"Content-Type": content_type}, body = content)


async def metrics_server(engine: 'NodePortSyncEngine', address: str, port: int):
    """
    Launch a lightweight HTTP server to serve the metrics endpoint.
    """
    app = web.Application()
    app.add_routes([web.get("/metrics", functools.partial(metrics_handler, engine))])

    runner = web.AppRunner(app, handle_signals = False, shutdown_timeout = 1.0)
    await runner.setup()

    site = web.TCPSite(runner, address, port)
    await site.start()

    # Sleep until we need to clean up
    try:
        await asyncio.Event().wait()
    finally:
        await asyncio.shield(runner.cleanup())
