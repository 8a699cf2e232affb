"""nkdocker CLI.

Usage:
    nkdocker version                      # Engine version
    nkdocker ping                         # Check the engine answers
    nkdocker ps --all                     # List containers
    nkdocker events --filter event=start  # Follow engine events
    nkdocker logs web --follow            # Follow container logs
    nkdocker stop web -t 5                # Stop a container

The engine is taken from --host, else NKDOCKER_HOST or DOCKER_HOST.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import click

from .client import DockerClient
from .config import EngineConfig
from .errors import DockerError
from .protocol.messages import Channel, Message, TerminalReason

# Output format options
FORMAT_TABLE = "table"
FORMAT_JSON = "json"


def truncate(text: str | None, max_len: int = 30) -> str:
    """Truncate text for display."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def parse_filters(values: tuple[str, ...]) -> dict[str, list[str]]:
    """Turn repeated key=value options into engine filters."""
    filters: dict[str, list[str]] = {}
    for value in values:
        key, sep, item = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected key=value, got {value!r}", param_hint="--filter")
        filters.setdefault(key, []).append(item)
    return filters


def _run(ctx: click.Context, action: Callable[[DockerClient], Awaitable[Any]]) -> Any:
    """Run an action against a fresh client, reporting engine errors."""
    config: EngineConfig = ctx.obj["config"]

    async def run() -> Any:
        async with DockerClient(config) as client:
            return await action(client)

    try:
        return asyncio.run(run())
    except DockerError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


def _print_output(channel: Channel | None, data: bytes) -> None:
    click.echo(data, nl=False, err=channel == Channel.STDERR)


def _print_stream(message: Message) -> None:
    if message.payload is not None:
        click.echo(json.dumps(message.payload, ensure_ascii=False))
    elif message.data is not None:
        _print_output(message.channel, message.data)


def _check_terminal(message: Message) -> None:
    if message.reason in (TerminalReason.REMOTE_ERROR, TerminalReason.CONNECTION_LOST):
        raise message.error or DockerError(message.reason.value)


@click.group()
@click.option("--host", "host_url", default=None, help="Engine URL (unix:///path, tcp://host:port, https://host:port)")
@click.option("--verbose", "-v", is_flag=True, help="Log connection details to stderr")
@click.pass_context
def main(ctx: click.Context, host_url: str | None, verbose: bool) -> None:
    """nkdocker - container engine client."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        config = EngineConfig.from_url(host_url) if host_url else EngineConfig.from_env()
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command()
@click.pass_context
def version(ctx: click.Context) -> None:
    """Show the engine version."""
    result = _run(ctx, lambda client: client.version())
    click.echo(json.dumps(result, indent=2))


@main.command()
@click.pass_context
def ping(ctx: click.Context) -> None:
    """Check that the engine answers."""
    if _run(ctx, lambda client: client.ping()):
        click.echo("OK")
    else:
        click.echo("Engine did not answer OK", err=True)
        sys.exit(1)


@main.command()
@click.option("--all", "-a", "show_all", is_flag=True, help="Include stopped containers")
@click.option(
    "--format",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
@click.pass_context
def ps(ctx: click.Context, show_all: bool, output_format: str) -> None:
    """List containers.

    Examples:

        nkdocker ps
        nkdocker ps --all --format json
    """
    containers = _run(ctx, lambda client: client.containers.list(all=show_all or None))

    if output_format == FORMAT_JSON:
        click.echo(json.dumps(containers, indent=2, ensure_ascii=False))
        return

    if not containers:
        click.echo("No containers found.")
        return

    click.echo(f"{'ID':<12} {'Image':<25} {'Status':<25} {'Names':<25}")
    click.echo("-" * 90)
    for c in containers:
        container_id = c.get("Id", "?")[:12]
        image = truncate(c.get("Image"), 25)
        status = truncate(c.get("Status"), 25)
        names = truncate(",".join(n.lstrip("/") for n in c.get("Names") or []), 25)
        click.echo(f"{container_id:<12} {image:<25} {status:<25} {names:<25}")


@main.command()
@click.option("--filter", "-f", "filter_values", multiple=True, help="Filter as key=value (repeatable)")
@click.option("--since", default=None, help="Show events since this timestamp")
@click.pass_context
def events(ctx: click.Context, filter_values: tuple[str, ...], since: str | None) -> None:
    """Print engine events as JSON lines until the stream ends.

    Examples:

        nkdocker events
        nkdocker events --filter event=start --filter event=die
    """
    filters = parse_filters(filter_values)

    async def follow(client: DockerClient) -> None:
        handle = await client.events(filters=filters or None, since=since)
        async for message in handle:
            if message.final:
                _check_terminal(message)
                break
            _print_stream(message)

    _run(ctx, follow)


@main.command()
@click.argument("container")
@click.option("--follow", "-f", is_flag=True, help="Follow log output")
@click.option("--tail", default=None, help="Number of lines to show from the end")
@click.pass_context
def logs(ctx: click.Context, container: str, follow: bool, tail: str | None) -> None:
    """Print container logs."""

    async def fetch(client: DockerClient) -> None:
        result = await client.containers.logs(
            container, follow=follow or None, stdout=True, stderr=True, tail=tail
        )
        if isinstance(result, bytes):
            click.echo(result, nl=False)
            return
        if isinstance(result, list):
            for channel, data in result:
                _print_output(channel, data)
            return
        async for message in result:
            if message.final:
                _check_terminal(message)
                break
            _print_stream(message)

    _run(ctx, fetch)


@main.command()
@click.argument("container")
@click.option("--time", "-t", "t", type=int, default=None, help="Seconds to wait before killing it")
@click.pass_context
def stop(ctx: click.Context, container: str, t: int | None) -> None:
    """Stop a container."""
    _run(ctx, lambda client: client.containers.stop(container, t=t))
    click.echo(container)


if __name__ == "__main__":
    main()
