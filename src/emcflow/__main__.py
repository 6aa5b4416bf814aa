"""CLI entrypoint for running emcflow as a module."""

from emcflow.cli import cli
from emcflow.logging import setup_logging

if __name__ == "__main__":
    setup_logging()
    cli()
