from importlib.metadata import entry_points

import click


PORTKEEPER_SUBCOMMANDS_ENTRY_POINT = "portkeeper.cli.subcommands"


@click.group()
def app():
    """
    Portkeeper command line interface.
    """


def main():
    """
    Add the commands from the entry point before executing the app.
    """
    for ep in entry_points(group = PORTKEEPER_SUBCOMMANDS_ENTRY_POINT):
        app.add_command(ep.load(), ep.name)
    app()
