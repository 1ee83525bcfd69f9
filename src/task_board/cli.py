"""
Command line entry point for the task board.

Commands:
    serve    Run the FastAPI server with the WebSocket sync channel
    profile  Connect as a client and print a user's public profile
"""

import asyncio
import json
import logging
import sys

import click
import uvicorn

from .api import create_app
from .client import BoardClient
from .config import DEFAULT_SERVER_URL, ENROLLMENT_POLICIES, BoardSettings

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


@click.group()
@click.version_option(package_name="task-board")
def main():
    """Multi-user realtime shared task board."""


@main.command()
@click.option("--db-path", envvar="TASK_BOARD_DB_PATH", default="task_board.db", show_default=True,
              help="SQLite database file")
@click.option("--host", envvar="TASK_BOARD_HOST", default="127.0.0.1", show_default=True)
@click.option("--port", envvar="TASK_BOARD_PORT", default=8080, show_default=True, type=int)
@click.option("--log-level", envvar="TASK_BOARD_LOG_LEVEL", default="INFO", show_default=True,
              type=click.Choice(LOG_LEVELS, case_sensitive=False))
@click.option("--enrollment-policy", envvar="TASK_BOARD_ENROLLMENT_POLICY", default=ENROLLMENT_POLICIES[0],
              show_default=True, type=click.Choice(ENROLLMENT_POLICIES),
              help="What completing a task you do not participate in does")
def serve(db_path, host, port, log_level, enrollment_policy):
    """Run the task board server."""
    settings = BoardSettings(
        database_path=db_path,
        host=host,
        port=port,
        log_level=log_level.upper(),
        enrollment_policy=enrollment_policy,
    )
    try:
        settings.validate()
    except ValueError as e:
        raise click.BadParameter(str(e))

    configure_logging(settings.log_level)
    logger.info(f"Starting task board on {host}:{port} (database: {db_path})")
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())


async def fetch_profile(url: str, login: str, timeout: float) -> dict:
    """Connect, request one profile and disconnect."""
    client = BoardClient(url=url, request_timeout=timeout, auto_reconnect=False)
    try:
        if not await client.connect():
            return {"success": False, "error": f"Could not connect to {url}", "code": "ConnectionLost"}
        return await client.get_profile(login)
    finally:
        await client.close()


@main.command()
@click.argument("login")
@click.option("--url", default=DEFAULT_SERVER_URL, show_default=True, help="Server WebSocket URL")
@click.option("--timeout", default=10.0, show_default=True, type=float, help="Seconds to wait for the server")
def profile(login, url, timeout):
    """Print the public profile of LOGIN as JSON."""
    configure_logging("WARNING")
    ack = asyncio.run(fetch_profile(url, login, timeout))
    if not ack.get("success"):
        click.echo(f"Error ({ack.get('code')}): {ack.get('error')}", err=True)
        sys.exit(1)
    click.echo(json.dumps(ack["profile"], indent=2))


if __name__ == "__main__":
    main()
