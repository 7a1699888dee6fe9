"""CLI entry point for aichat-engine."""

import asyncio
import logging
import sys

import click
import uvicorn

from .engine import ChatEngine
from .errors import NotFoundError
from .export import session_to_json, session_to_markdown


@click.group()
def main():
    """Chat sessions with streaming replies, media generation and history."""
    pass


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option("--log-level", default="info", type=click.Choice(["debug", "info", "warning", "error"]))
def serve(port: int, host: str, log_level: str):
    """Start the web interface."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    click.echo(f"Starting aichat-engine on http://{host}:{port}")
    uvicorn.run("aichat_engine.server:app", host=host, port=port, reload=False, log_level=log_level)


@main.command()
@click.argument("session_id")
@click.option("--format", "fmt", default="md", type=click.Choice(["md", "json"]), help="Export format.")
def export(session_id: str, fmt: str):
    """Print a stored session as Markdown or JSON."""

    async def load():
        engine = ChatEngine.from_config()
        await engine.start()
        return engine.sessions.get(session_id)

    try:
        session = asyncio.run(load())
    except NotFoundError:
        click.echo(f"Session not found: {session_id}", err=True)
        sys.exit(1)

    click.echo(session_to_json(session) if fmt == "json" else session_to_markdown(session))
