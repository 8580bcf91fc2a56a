import importlib.metadata
import typing as t

from .. import config

from .base import ClientProvider, ClusterClient, ServiceWatch


EP_GROUP = "portkeeper.sync.clients"


def load(config_obj: config.SyncConfig) -> ClientProvider:
    """
    Loads the client provider from the given configuration.
    """
    (ep, ) = importlib.metadata.entry_points(group = EP_GROUP, name = config_obj.client_type)
    provider_type: t.Type[ClientProvider] = ep.load()
    return provider_type.from_config(config_obj)
