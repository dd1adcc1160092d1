"""BosBase CLI — health checks, realtime tailing and pub/sub from the shell.

Usage:
    bosbase health                                  # Backend health JSON
    bosbase listen "posts/*"                        # Print realtime events as JSON lines
    bosbase listen "posts/*" --query '{"filter":"published=true"}'
    bosbase publish chat/general '{"text":"hi"}'    # Publish and print the ack
    bosbase pubsub-listen chat/general              # Print pub/sub messages
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Optional

import click
import structlog

from bosbase.client import BosBase
from bosbase.config import settings
from bosbase.errors import ClientResponseError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous click handler."""
    return asyncio.run(coro)


def _pretty_json(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


def _parse_json(value: Optional[str], name: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint=name)


def _configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def _make_client(ctx: click.Context) -> BosBase:
    """Build a client from the group options."""
    client = BosBase(ctx.obj["base_url"])
    if ctx.obj.get("token"):
        client.auth_store.save(ctx.obj["token"])
    return client


def _fail(error: ClientResponseError) -> None:
    click.secho(f"Error: {error.message or error}", fg="red", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--base-url",
    envvar="BOSBASE_BASE_URL",
    default=settings.base_url,
    show_default=True,
    help="Backend root URL.",
)
@click.option("--token", envvar="BOSBASE_TOKEN", default="", help="Auth token (JWT).")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.pass_context
def cli(ctx: click.Context, base_url: str, token: str, log_level: str) -> None:
    """BosBase command line client."""
    _configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["base_url"] = base_url
    ctx.obj["token"] = token


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Show the backend health status."""

    async def _go():
        async with _make_client(ctx) as client:
            return await client.health.check()

    try:
        click.echo(_pretty_json(_run(_go())))
    except ClientResponseError as e:
        _fail(e)


@cli.command()
@click.argument("topic")
@click.option("--query", default=None, help="Subscription query options as JSON.")
@click.option("--count", default=0, type=int, help="Exit after this many events (0 = forever).")
@click.pass_context
def listen(ctx: click.Context, topic: str, query: Optional[str], count: int) -> None:
    """Subscribe to a realtime TOPIC and print every event."""
    query_options = _parse_json(query, "--query")

    async def _go():
        done = asyncio.Event()
        received = 0

        def on_event(event: dict) -> None:
            nonlocal received
            click.echo(json.dumps(event, default=str))
            received += 1
            if count and received >= count:
                done.set()

        async with _make_client(ctx) as client:
            unsubscribe = await client.realtime.subscribe(topic, on_event, query_options)
            await done.wait()
            await unsubscribe()

    try:
        _run(_go())
    except ClientResponseError as e:
        _fail(e)


@cli.command()
@click.argument("topic")
@click.argument("data", default="null")
@click.pass_context
def publish(ctx: click.Context, topic: str, data: str) -> None:
    """Publish JSON DATA to a pub/sub TOPIC and print the ack."""
    payload = _parse_json(data, "DATA")

    async def _go():
        async with _make_client(ctx) as client:
            return await client.pubsub.publish(topic, payload)

    try:
        ack = _run(_go())
    except ClientResponseError as e:
        _fail(e)
    else:
        click.echo(_pretty_json(ack.model_dump()))


@cli.command("pubsub-listen")
@click.argument("topic")
@click.option("--count", default=0, type=int, help="Exit after this many messages (0 = forever).")
@click.pass_context
def pubsub_listen(ctx: click.Context, topic: str, count: int) -> None:
    """Subscribe to a pub/sub TOPIC and print every message."""

    async def _go():
        done = asyncio.Event()
        received = 0

        def on_message(message) -> None:
            nonlocal received
            click.echo(message.model_dump_json())
            received += 1
            if count and received >= count:
                done.set()

        async with _make_client(ctx) as client:
            unsubscribe = await client.pubsub.subscribe(topic, on_message)
            await done.wait()
            await unsubscribe()

    try:
        _run(_go())
    except ClientResponseError as e:
        _fail(e)


if __name__ == "__main__":
    cli()
