import asyncio
import logging

import click

from .config import ProxyConfig
from .main import run


@click.command()
@click.option(
    "--config",
    "config_path",
    type = click.Path(exists = True, file_okay = True, dir_okay = False),
    help = "Path to configuration file."
)
@click.option("--debug", is_flag = True, help = "Enable additional debugging.")
@click.option("--upstream-url", help = "The URL of the upstream server.")
@click.option("--listen-address", help = "The address to listen on.")
@click.option("--listen-port", type = int, help = "The port to listen on.")
def main(config_path, debug, **kwargs):
    """
    Forwards all requests on the listen address to a fixed upstream server.
    """
    config_kwargs = { k: v for k, v in kwargs.items() if v is not None }
    # The flag only ever enables debugging
    if debug:
        config_kwargs["debug"] = True
    config = ProxyConfig(_path = config_path, **config_kwargs)
    config.logging.apply()
    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    asyncio.run(run(config))
