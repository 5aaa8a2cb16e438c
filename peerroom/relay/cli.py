"""`peerroom-relay` command-line interface."""
from __future__ import annotations

import logging
import sys
from typing import Any
from typing import Callable
from typing import ClassVar
from typing import TypeVar

import click
import requests

import peerroom
from peerroom.relay.client import DEFAULT_APP_ID
from peerroom.relay.client import DEFAULT_ORIGIN
from peerroom.relay.client import RelayClient
from peerroom.relay.config import RelayConfig
from peerroom.relay.exceptions import RelayError
from peerroom.relay.serve import serve

logger = logging.getLogger(__name__)

T = TypeVar('T')


class _CLIFormatter(logging.Formatter):
    """Custom format for CLI printing.

    Source: https://stackoverflow.com/questions/1343227
    """

    red = '\x1b[0;31m'
    green = '\x1b[0;32m'
    yellow = '\x1b[0;33m'
    cyan = '\x1b[0;36m'
    bold_red = '\x1b[1;31m'
    reset = '\x1b[0m'

    FORMATS: ClassVar[dict[int, str]] = {
        logging.DEBUG: f'{cyan}DEBUG:{reset} %(message)s',
        logging.INFO: f'{green}INFO:{reset} %(message)s',
        logging.WARNING: f'{yellow}WARNING:{reset} %(message)s',
        logging.ERROR: f'{red}ERROR:{reset} %(message)s',
        logging.CRITICAL: f'{bold_red}CRITICAL:{reset} %(message)s',
    }

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover
        formatter = logging.Formatter(self.FORMATS[record.levelno])
        return formatter.format(record)


@click.group()
@click.option(
    '--log-level',
    default='INFO',
    type=click.Choice(
        ['ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
@click.option(
    '--address',
    default='http://localhost:8780',
    metavar='ADDR',
    help='Relay address used by room commands.',
)
@click.option(
    '--app-id',
    default=DEFAULT_APP_ID,
    metavar='NAME',
    help='Application namespace used by room commands.',
)
@click.option(
    '--origin',
    default=DEFAULT_ORIGIN,
    metavar='ORIGIN',
    help='Origin header sent by room commands.',
)
@click.pass_context
def cli(
    ctx: click.Context,
    log_level: str,
    address: str,
    app_id: str,
    origin: str,
) -> None:
    """Serve and interact with PeerRoom relays."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_CLIFormatter())
    logging.basicConfig(level=log_level, handlers=[handler])
    ctx.ensure_object(dict)
    ctx.obj['LOG_LEVEL'] = log_level
    ctx.obj['CLIENT'] = RelayClient(address, app_id, origin=origin)


@cli.command()
def version() -> None:
    """Show the PeerRoom version."""
    click.echo(f'PeerRoom v{peerroom.__version__}')


@cli.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option('--database', metavar='PATH', help='SQLite database file.')
@click.option('--log-file', metavar='PATH', help='File to append logs to.')
@click.option(
    '--uvloop/--no-uvloop',
    default=True,
    help='Install uvloop as the event loop.',
)
@click.pass_context
def start(
    ctx: click.Context,
    config_path: str | None,
    host: str | None,
    port: int | None,
    database: str | None,
    log_file: str | None,
    uvloop: bool,
) -> None:
    """Start a relay.

    If no configuration file is provided, the defaults of RelayConfig are
    used. The remaining options override the configuration file.
    """
    try:
        config = (
            RelayConfig()
            if config_path is None
            else RelayConfig.from_toml(config_path)
        )
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        ctx.exit(1)

    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if database is not None:
        config.database_path = database
    if log_file is not None:
        config.logging.log_file = log_file
    config.logging.default_level = ctx.obj['LOG_LEVEL']

    serve(config, use_uvloop=uvloop)


def _run(
    ctx: click.Context,
    operation: str,
    func: Callable[..., T],
    *args: Any,
) -> T:
    try:
        return func(*args)
    except (RelayError, requests.exceptions.RequestException) as e:
        logger.error(f'Failed to {operation}: {e}')
        ctx.exit(1)


@cli.command()
@click.pass_context
def create(ctx: click.Context) -> None:
    """Create a room and print its code."""
    client: RelayClient = ctx.obj['CLIENT']
    code = _run(ctx, 'create room', client.create_room)
    click.echo(code)


@cli.command()
@click.argument('code', metavar='CODE')
@click.pass_context
def extend(ctx: click.Context, code: str) -> None:
    """Extend the expiry of a room."""
    client: RelayClient = ctx.obj['CLIENT']
    _run(ctx, 'extend room', client.extend_room, code)
    logger.info(f'Extended room {client.room_id(code)}')


@cli.command()
@click.argument('code', metavar='CODE')
@click.pass_context
def delete(ctx: click.Context, code: str) -> None:
    """Delete a room."""
    client: RelayClient = ctx.obj['CLIENT']
    _run(ctx, 'delete room', client.delete_room, code)
    logger.info(f'Deleted room {client.room_id(code)}')


@cli.command()
@click.argument('code', metavar='CODE')
@click.option(
    '--since',
    default=-1,
    type=int,
    metavar='ID',
    help='Only list messages newer than this identifier.',
)
@click.pass_context
def messages(ctx: click.Context, code: str, since: int) -> None:
    """List the messages in a room."""
    client: RelayClient = ctx.obj['CLIENT']
    found = _run(ctx, 'list messages', client.list_messages, code, since)
    for message in found:
        click.echo(f'{message.id}\t{message.body}')


@cli.command()
@click.argument('code', metavar='CODE')
@click.argument('body', metavar='BODY')
@click.pass_context
def post(ctx: click.Context, code: str, body: str) -> None:
    """Append a message to a room."""
    client: RelayClient = ctx.obj['CLIENT']
    _run(ctx, 'post message', client.post_message, code, body)
