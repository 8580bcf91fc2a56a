import asyncio

import click

from .config import SyncConfig
from .main import run


@click.command()
@click.option(
    "--config",
    "config_path",
    type = click.Path(exists = True, file_okay = True, dir_okay = False),
    help = "Path to configuration file."
)
@click.option(
    "--kubeconfig",
    "kubeconfig_path",
    type = click.Path(exists = False),
    help = "Path to the kubeconfig for the cluster. It does not need to exist yet."
)
@click.option("--listen-address", help = "The address to open node port listeners on.")
@click.option(
    "--retry-interval",
    type = float,
    help = "Seconds to wait before retrying after a transient error."
)
def main(config_path, **kwargs):
    """
    Keeps a local listener open for every node port service in a Kubernetes cluster.
    """
    config_kwargs = { k: v for k, v in kwargs.items() if v is not None }
    config = SyncConfig(_path = config_path, **config_kwargs)
    config.logging.apply()
    asyncio.run(run(config))
