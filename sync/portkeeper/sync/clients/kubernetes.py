import asyncio
import functools
import logging
import os
import socket
import threading
import typing as t

import yaml

from kubernetes import client as k8s_client, config as k8s_config, watch as k8s_watch

from .. import config, errors, model
from . import base


def service_from_object(obj: k8s_client.V1Service) -> model.Service:
    """
    Produces a service DTO instance for the given Kubernetes service object.
    """
    spec = obj.spec or k8s_client.V1ServiceSpec()
    return model.Service(
        namespace = obj.metadata.namespace,
        name = obj.metadata.name,
        type = spec.type or "ClusterIP",
        ports = tuple(
            model.ServicePort(
                port = port.port,
                node_port = port.node_port,
                name = port.name,
                protocol = port.protocol or "TCP"
            )
            for port in (spec.ports or [])
        )
    )


def interrupt_response(response):
    """
    Unblocks a read of the given response that is in progress on another thread.
    """
    connection = getattr(response, "connection", None)
    sock = getattr(connection, "sock", None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # The socket is already closed
            pass


class ServiceTracker:
    """
    Translates watch events into service events using the last known state of each service.

    A modified service is reported as the deletion of its previous state followed by the
    creation of its new state, so that ports from the previous state are released.
    """
    def __init__(self, services: t.Iterable[model.Service] = ()):
        self._services = { (s.namespace, s.name): s for s in services }

    def translate(self, event_type: str, service: model.Service) -> t.List[model.Event]:
        key = (service.namespace, service.name)
        if event_type == "DELETED":
            self._services.pop(key, None)
            return [model.Event(model.EventKind.DELETED, service)]
        elif event_type in {"ADDED", "MODIFIED"}:
            previous = self._services.get(key)
            self._services[key] = service
            events = [model.Event(model.EventKind.CREATED, service)]
            if previous is not None:
                events.insert(0, model.Event(model.EventKind.DELETED, previous))
            return events
        else:
            # Bookmarks carry no changes
            return []


class WatchThread:
    """
    Streams watch events for services from a dedicated thread onto an asyncio queue.

    Errors are placed on the same queue as the events, after which the thread exits.
    """
    def __init__(
        self,
        client: "KubernetesClient",
        tracker: ServiceTracker,
        resource_version: str
    ):
        self.client = client
        self.tracker = tracker
        self.resource_version = resource_version
        self.queue = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._watch = k8s_watch.Watch()
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._response = None
        self._thread = threading.Thread(target = self._run, name = "service-watch", daemon = True)
        self._logger = logging.getLogger(__name__)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def _push(self, item):
        if self._stopped.is_set():
            return
        try:
            self._loop.call_soon_threadsafe(self.queue.put_nowait, item)
        except RuntimeError:
            # The event loop has been closed
            self._stopped.set()

    def _request_func(self):
        func, args = self.client._list_call()

        # The watch finds the return type from the docstring of the function
        @functools.wraps(func)
        def request(*args, **kwargs):
            response = func(*args, **kwargs)
            with self._lock:
                self._response = response
                stopped = self._stopped.is_set()
            if stopped:
                interrupt_response(response)
            return response

        return request, args

    def _run(self):
        func, args = self._request_func()
        kube_config = self.client.config
        try:
            while not self._stopped.is_set():
                self._logger.debug(
                    "Starting watch from resource version %s",
                    self.resource_version
                )
                stream = self._watch.stream(
                    func,
                    *args,
                    resource_version = self.resource_version,
                    timeout_seconds = kube_config.watch_timeout,
                    _request_timeout = (
                        kube_config.request_timeout,
                        kube_config.watch_timeout + kube_config.request_timeout
                    )
                )
                for raw_event in stream:
                    if self._stopped.is_set():
                        break
                    service = service_from_object(raw_event["object"])
                    for event in self.tracker.translate(raw_event["type"], service):
                        self._push(event)
                # The server closed the watch after the timeout, so reissue it
                self.resource_version = self._watch.resource_version or self.resource_version
        except Exception as exc:
            self._push(exc)
        finally:
            with self._lock:
                self._response = None

    def start(self):
        self._thread.start()

    async def stop(self):
        """
        Stops the watch, closing any in-flight request, and waits for the thread to exit.
        """
        self._stopped.set()
        self._watch.stop()
        with self._lock:
            response = self._response
        if response is not None:
            interrupt_response(response)
        if self._thread.is_alive():
            await asyncio.to_thread(self._thread.join, self.client.config.request_timeout)
        if self._thread.is_alive():
            self._logger.warning("Service watch thread did not exit after stopping")


class KubernetesClient(base.ClusterClient):
    """
    Cluster client that watches services using the Kubernetes API.

    The Kubernetes client is synchronous, so requests are issued from worker threads.
    """
    def __init__(self, api_client: k8s_client.ApiClient, config_obj: config.KubernetesConfig):
        self.config = config_obj
        self._api_client = api_client
        self._core_api = k8s_client.CoreV1Api(api_client)
        self._logger = logging.getLogger(__name__)

    def _list_call(self) -> t.Tuple[t.Callable, t.Tuple[str, ...]]:
        # The namespace is passed as an argument so the function keeps its docstring
        if self.config.namespace:
            return self._core_api.list_namespaced_service, (self.config.namespace, )
        else:
            return self._core_api.list_service_for_all_namespaces, ()

    async def _events(self, services: k8s_client.V1ServiceList):
        """
        Yield events for the current services, then for each change to the services.
        """
        initial = [service_from_object(obj) for obj in services.items]
        for service in initial:
            yield model.Event(model.EventKind.CREATED, service)
        thread = WatchThread(self, ServiceTracker(initial), services.metadata.resource_version)
        thread.start()
        try:
            while True:
                item = await thread.queue.get()
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            await thread.stop()

    async def watch_services(self) -> base.ServiceWatch:
        func, args = self._list_call()
        services = await asyncio.to_thread(
            func,
            *args,
            _request_timeout = self.config.request_timeout
        )
        self._logger.info(
            "Found %d services [namespace: %s, resource version: %s]",
            len(services.items),
            self.config.namespace or "*",
            services.metadata.resource_version
        )
        return base.ServiceWatch(self._events(services))

    async def close(self):
        self._api_client.close()


class KubernetesClientProvider(base.ClientProvider):
    """
    Client provider that loads kubeconfig files and builds Kubernetes API clients.
    """
    def __init__(self, config_obj: config.KubernetesConfig):
        self.config = config_obj

    async def load_config(self, path: str) -> t.Dict[str, t.Any]:
        path = os.path.expanduser(path)
        try:
            with open(path) as fh:
                data = yaml.safe_load(fh)
        except FileNotFoundError:
            raise
        except (OSError, yaml.YAMLError) as exc:
            raise errors.ConfigurationError(
                f"could not load Kubernetes client config from {path}: {exc}"
            ) from exc
        if not isinstance(data, dict):
            raise errors.ConfigurationError(
                f"could not load Kubernetes client config from {path}: not a mapping"
            )
        return data

    def create_client(self, cluster_config: t.Dict[str, t.Any]) -> KubernetesClient:
        try:
            api_client = k8s_config.new_client_from_config_dict(
                cluster_config,
                persist_config = False
            )
        except Exception as exc:
            raise errors.ClientError(f"failed to create Kubernetes client: {exc}") from exc
        return KubernetesClient(api_client, self.config)

    @classmethod
    def from_config(cls, config_obj: config.SyncConfig) -> "KubernetesClientProvider":
        return cls(config_obj.kubernetes)
