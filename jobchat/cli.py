"""CLI interface for the chat service.

Provides commands for:
- Starting the chat server
- Creating the message tables
"""

import asyncio

import click
import uvicorn
from sqlalchemy.exc import SQLAlchemyError

from jobchat import __version__
from jobchat.config import get_settings


async def _prepare_store() -> None:
    from jobchat.db import close_db, init_db

    try:
        await init_db()
    finally:
        await close_db()


def _check_store(store_url: str) -> None:
    try:
        asyncio.run(_prepare_store())
    except (SQLAlchemyError, OSError) as exc:
        raise click.ClickException(f"Cannot initialize store at {store_url}: {exc}") from exc


@click.group()
@click.version_option(version=__version__, prog_name="jobchat")
def cli() -> None:
    """jobchat - real-time chat pipeline for the employment service."""
    pass


@cli.command()
@click.option("--host", "-h", default=None, help="Host to bind to")
@click.option("--port", "-p", default=None, type=int, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the chat server.

    Exits non-zero when the store cannot be initialized or the port cannot
    be bound.
    """
    settings = get_settings()
    actual_host = host or settings.listen_host
    actual_port = port or settings.listen_port

    _check_store(settings.store_url)

    click.echo(f"Starting jobchat on {actual_host}:{actual_port}")
    uvicorn.run(
        "jobchat.server:app",
        host=actual_host,
        port=actual_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@cli.command("init-db")
def init_db_command() -> None:
    """Create the chat message tables."""
    settings = get_settings()
    _check_store(settings.store_url)
    click.echo(click.style(f"Store ready at {settings.store_url}", fg="green"))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
