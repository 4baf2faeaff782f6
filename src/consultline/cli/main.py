"""
consultline CLI: `consultline` command.

Commands:
  consultline quote              Minimum-balance check and cost projection (offline)
  consultline balance <customer> Read a customer's balance from the ledger
  consultline session <advisor>  Run a live chat or call session
"""

import asyncio

try:
    import click
    from rich.console import Console
except ImportError:
    raise SystemExit("CLI requires extras: pip install consultline[cli]")

from consultline.app_logging import configure_logging
from consultline.client import ConsultEngine
from consultline.config import EngineSettings

console = Console()


def _get_settings() -> EngineSettings:
    settings = EngineSettings()
    configure_logging(settings.log_level)
    return settings


def _get_engine(**kwargs) -> ConsultEngine:
    return ConsultEngine(_get_settings(), **kwargs)


def _run(coro):
    return asyncio.run(coro)


@click.group()
@click.version_option("0.1.0")
def main():
    """consultline: paid advisor sessions from the terminal."""


# Register subcommands from separate modules
from consultline.cli.billing import balance_cmd, quote_cmd
from consultline.cli.session import session_cmd

main.add_command(quote_cmd)
main.add_command(balance_cmd)
main.add_command(session_cmd)


if __name__ == "__main__":
    main()
