import asyncio
import contextlib
import random

import pytest

from portkeeper.sync import errors
from portkeeper.sync.engine import NodePortSyncEngine, State

from .fakes import (
    FakeProvider,
    FakeTracker,
    created,
    deleted,
    make_service,
    wait_until,
)


LOCALHOST = "127.0.0.1"


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def engine(provider, tracker):
    return NodePortSyncEngine(provider, tracker, "/kubeconfig", retry_interval = 0.01)


@contextlib.asynccontextmanager
async def running(engine):
    """
    Runs the engine in a task, stopping it on exit.
    """
    stop = asyncio.Event()
    task = asyncio.create_task(engine.run(stop))
    try:
        yield stop, task
    finally:
        stop.set()
        await asyncio.wait_for(task, 1)


async def watching(provider, count = 1):
    """
    Waits for the given number of watches to have been opened and returns the latest.
    """
    await wait_until(lambda: len(provider.streams) >= count)
    return provider.streams[-1]


@pytest.mark.asyncio
async def test_node_port_service_opens_and_closes_listener(engine, provider, tracker):
    service = make_service(node_ports = [30080])
    async with running(engine):
        stream = await watching(provider)
        stream.send(created(service))
        await wait_until(lambda: len(tracker.calls) == 1)
        assert tracker.calls == [("add", LOCALHOST, 30080)]
        stream.send(deleted(service))
        await wait_until(lambda: len(tracker.calls) == 2)
        assert tracker.calls[1] == ("remove", LOCALHOST, 30080)
    assert tracker.open == set()


@pytest.mark.asyncio
async def test_replaced_service_moves_listeners(engine, provider, tracker):
    before = make_service(node_ports = [30080, 30443])
    after = make_service(node_ports = [30081, 30443])
    internal = make_service(node_ports = [30081], type = "ClusterIP")
    async with running(engine):
        stream = await watching(provider)
        stream.send(created(before))
        # A node port changes, then the service stops being a node port service
        stream.send(deleted(before), created(after))
        stream.send(deleted(after), created(internal))
        await wait_until(lambda: len(tracker.calls) == 8)
    assert tracker.calls == [
        ("add", LOCALHOST, 30080),
        ("add", LOCALHOST, 30443),
        ("remove", LOCALHOST, 30080),
        ("remove", LOCALHOST, 30443),
        ("add", LOCALHOST, 30081),
        ("add", LOCALHOST, 30443),
        ("remove", LOCALHOST, 30081),
        ("remove", LOCALHOST, 30443),
    ]
    assert tracker.open == set()


@pytest.mark.asyncio
async def test_non_node_port_services_are_ignored(engine, provider, tracker):
    cluster_ip = make_service("internal", [30090], type = "ClusterIP")
    load_balancer = make_service("public", [30091], type = "LoadBalancer")
    async with running(engine):
        stream = await watching(provider)
        stream.send(created(cluster_ip), created(load_balancer), deleted(cluster_ip))
        # Events are processed in order, so once this is handled the others have been too
        stream.send(created(make_service("marker", [30100])))
        await wait_until(lambda: len(tracker.calls) >= 1)
    assert tracker.calls == [("add", LOCALHOST, 30100)]


@pytest.mark.asyncio
async def test_ports_without_node_port_are_skipped(engine, provider, tracker):
    service = make_service(node_ports = [None, 30080])
    async with running(engine):
        stream = await watching(provider)
        stream.send(created(service))
        await wait_until(lambda: len(tracker.calls) == 1)
    assert tracker.calls == [("add", LOCALHOST, 30080)]


@pytest.mark.asyncio
async def test_failing_port_does_not_stop_other_ports(provider):
    tracker = FakeTracker(fail_ports = {30081})
    engine = NodePortSyncEngine(provider, tracker, "/kubeconfig", retry_interval = 0.01)
    service = make_service(node_ports = [30080, 30081, 30082])
    async with running(engine):
        stream = await watching(provider)
        stream.send(created(service))
        await wait_until(lambda: len(tracker.calls) == 3)
        assert tracker.calls == [
            ("add", LOCALHOST, 30080),
            ("add", LOCALHOST, 30081),
            ("add", LOCALHOST, 30082),
        ]
        assert tracker.open == {(LOCALHOST, 30080), (LOCALHOST, 30082)}
        # The failure does not affect the state of the engine
        assert engine.state == State.WATCHING
        stream.send(deleted(service))
        await wait_until(lambda: len(tracker.calls) == 6)
    assert tracker.open == set()


@pytest.mark.asyncio
async def test_listen_address_is_configurable(provider, tracker):
    engine = NodePortSyncEngine(
        provider,
        tracker,
        "/kubeconfig",
        listen_address = "127.0.0.2",
        retry_interval = 0.01
    )
    async with running(engine):
        stream = await watching(provider)
        stream.send(created(make_service(node_ports = [30080])))
        await wait_until(lambda: len(tracker.calls) == 1)
    assert tracker.calls == [("add", "127.0.0.2", 30080)]


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
async def test_requested_listeners_match_live_node_port_services(engine, provider, tracker, seed):
    rng = random.Random(seed)
    # Each service has a fixed, distinct set of node ports
    services = [
        make_service(f"svc-{idx}", [30000 + 10 * idx + p for p in range(rng.randint(1, 3))])
        for idx in range(5)
    ]
    services.append(make_service("cluster-ip", [31000], type = "ClusterIP"))
    events = [
        (created if rng.random() < 0.6 else deleted)(rng.choice(services))
        for _ in range(40)
    ]
    expected_calls = sum(len(e.service.node_ports) for e in events if e.service.is_node_port)
    live = {}
    for event in events:
        if event.deleted:
            live.pop(event.service.name, None)
        else:
            live[event.service.name] = event.service
    expected = {
        (LOCALHOST, port)
        for service in live.values()
        if service.is_node_port
        for port in service.node_ports
    }
    async with running(engine):
        stream = await watching(provider)
        stream.send(*events)
        await wait_until(lambda: len(tracker.calls) == expected_calls)
    assert tracker.open == expected


@pytest.mark.asyncio
async def test_missing_config_is_retried(engine, provider, tracker):
    provider.load_results = [FileNotFoundError("/kubeconfig")] * 3
    async with running(engine):
        await watching(provider)
        assert provider.load_attempts == 4
        assert engine.state == State.WATCHING
    assert tracker.calls == []


@pytest.mark.asyncio
async def test_config_error_is_fatal(engine, provider):
    provider.load_results = [errors.ConfigurationError("invalid kubeconfig")]
    with pytest.raises(errors.ConfigurationError):
        await asyncio.wait_for(engine.run(asyncio.Event()), 1)
    assert provider.load_attempts == 1
    assert provider.clients == []


@pytest.mark.asyncio
async def test_unexpected_config_error_is_wrapped(engine, provider):
    provider.load_results = [PermissionError("/kubeconfig")]
    with pytest.raises(errors.ConfigurationError) as excinfo:
        await asyncio.wait_for(engine.run(asyncio.Event()), 1)
    assert isinstance(excinfo.value.__cause__, PermissionError)


@pytest.mark.asyncio
async def test_client_creation_error_is_fatal(engine, provider):
    provider.create_error = ValueError("no current context")
    with pytest.raises(errors.ClientError) as excinfo:
        await asyncio.wait_for(engine.run(asyncio.Event()), 1)
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert provider.load_attempts == 1


@pytest.mark.asyncio
async def test_watch_timeout_is_retried(engine, provider, tracker):
    provider.watch_errors = [TimeoutError("timed out"), ConnectionRefusedError(111, "refused")]
    async with running(engine):
        await watching(provider)
        assert provider.watch_attempts == 3
        # A new client is created for each attempt and the failed ones are closed
        assert len(provider.clients) == 3
        assert [c.closed for c in provider.clients] == [True, True, False]
        # The config is not reloaded for a watch timeout
        assert provider.load_attempts == 1
    assert tracker.calls == []


@pytest.mark.asyncio
async def test_other_watch_errors_are_fatal(engine, provider):
    provider.watch_errors = [RuntimeError("services is forbidden")]
    with pytest.raises(errors.WatchOpenError, match = "forbidden") as excinfo:
        await asyncio.wait_for(engine.run(asyncio.Event()), 1)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert provider.clients[0].closed


@pytest.mark.asyncio
async def test_stream_error_restarts_from_config(engine, provider, tracker):
    async with running(engine):
        first = await watching(provider)
        first.send(created(make_service("before", [30080])))
        await wait_until(lambda: len(tracker.calls) == 1)
        first.fail(RuntimeError("connection reset"))
        second = await watching(provider, 2)
        # Exactly one full restart: the config is reloaded and a new client is created
        assert provider.load_attempts == 2
        assert len(provider.clients) == 2
        assert provider.clients[0].closed
        assert first.closed
        # No listener calls are made during the restart
        assert tracker.calls == [("add", LOCALHOST, 30080)]
        second.send(created(make_service("after", [30081])))
        await wait_until(lambda: len(tracker.calls) == 2)
    assert tracker.calls[1] == ("add", LOCALHOST, 30081)


@pytest.mark.asyncio
async def test_stream_end_restarts_from_config(engine, provider):
    async with running(engine):
        first = await watching(provider)
        first.end()
        await watching(provider, 2)
        assert provider.load_attempts == 2
        assert provider.clients[0].closed


@pytest.mark.asyncio
async def test_restart_waits_for_config(engine, provider):
    async with running(engine):
        first = await watching(provider)
        provider.load_results = [FileNotFoundError("/kubeconfig")] * 2
        first.fail(RuntimeError("connection reset"))
        await watching(provider, 2)
        assert provider.load_attempts == 4


@pytest.mark.asyncio
async def test_stop_while_waiting_for_config(provider, tracker):
    engine = NodePortSyncEngine(provider, tracker, "/kubeconfig", retry_interval = 30)
    provider.load_results = [FileNotFoundError("/kubeconfig")] * 10
    stop = asyncio.Event()
    task = asyncio.create_task(engine.run(stop))
    await wait_until(lambda: provider.load_attempts == 1)
    stop.set()
    assert await asyncio.wait_for(task, 0.5) is None
    assert engine.state == State.NO_CONFIG


@pytest.mark.asyncio
async def test_stop_while_waiting_for_server(provider, tracker):
    engine = NodePortSyncEngine(provider, tracker, "/kubeconfig", retry_interval = 30)
    provider.watch_errors = [TimeoutError("timed out")] * 10
    stop = asyncio.Event()
    task = asyncio.create_task(engine.run(stop))
    await wait_until(lambda: provider.watch_attempts == 1)
    stop.set()
    assert await asyncio.wait_for(task, 0.5) is None
    assert all(c.closed for c in provider.clients)


@pytest.mark.asyncio
async def test_stop_while_opening_watch(engine, provider):
    provider.watch_blocks = True
    stop = asyncio.Event()
    task = asyncio.create_task(engine.run(stop))
    await wait_until(lambda: provider.watch_attempts == 1)
    stop.set()
    assert await asyncio.wait_for(task, 0.5) is None
    assert engine.state == State.CONNECTED
    assert provider.clients[0].closed


@pytest.mark.asyncio
async def test_stop_while_watching(engine, provider, tracker):
    stop = asyncio.Event()
    task = asyncio.create_task(engine.run(stop))
    stream = await watching(provider)
    stop.set()
    assert await asyncio.wait_for(task, 0.5) is None
    assert stream.closed
    assert provider.clients[0].closed
    # Nothing is processed once stopped
    stream.send(created(make_service(node_ports = [30080])))
    await asyncio.sleep(0.01)
    assert tracker.calls == []


@pytest.mark.asyncio
async def test_stop_is_idempotent(engine, provider):
    stop = asyncio.Event()
    task = asyncio.create_task(engine.run(stop))
    await watching(provider)
    stop.set()
    stop.set()
    assert await asyncio.wait_for(task, 0.5) is None
    # Running again with the event already set returns immediately
    assert await asyncio.wait_for(engine.run(stop), 0.5) is None
    assert len(provider.clients) == 1


@pytest.mark.asyncio
async def test_cancelling_run_closes_watch(engine, provider):
    task = asyncio.create_task(engine.run(asyncio.Event()))
    stream = await watching(provider)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert stream.closed
    assert provider.clients[0].closed
