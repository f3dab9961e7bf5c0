"""Delta stream CLI.

Usage:
    delta-stream latest-cursor                      # Print the latest cursor
    delta-stream tail                               # Stream from the latest cursor
    delta-stream tail --cursor abc123               # Resume from a cursor
    delta-stream tail --include-types thread,message
    delta-stream --verbose tail                     # Debug logging on stderr

Deltas are written to stdout as one JSON object per line; status and errors
go to stderr.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import click

from .client import DeltaClient
from .config import ClientConfig, StreamConfig
from .errors import DeltaStreamError
from .events import StreamEvent, StreamEventType


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )


@click.group()
@click.option("--api-server", envvar="DELTA_STREAM_API_SERVER", help="API server URL")
@click.option("--access-token", envvar="DELTA_STREAM_ACCESS_TOKEN", help="Account access token")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    api_server: str | None,
    access_token: str | None,
    verbose: bool,
) -> None:
    """Consume the delta streaming API from the command line."""
    _configure_logging(verbose)
    try:
        config = ClientConfig.from_env()
        if api_server:
            config = ClientConfig(
                api_server=api_server,
                access_token=config.access_token,
                timeout=config.timeout,
            )
    except DeltaStreamError as e:
        raise click.UsageError(str(e)) from e
    if access_token:
        config.access_token = access_token
    ctx.obj = config


@main.command("latest-cursor")
@click.pass_obj
def latest_cursor(config: ClientConfig) -> None:
    """Print the cursor of the most recent delta."""

    async def fetch() -> str:
        async with DeltaClient(config) as client:
            return await client.latest_cursor()

    try:
        cursor = asyncio.run(fetch())
    except DeltaStreamError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(cursor)


@main.command()
@click.option("--cursor", "-c", help="Cursor to resume from (default: latest)")
@click.option("--include-types", help="Comma-separated object types to include")
@click.option("--exclude-types", help="Comma-separated object types to exclude")
@click.option("--expanded", is_flag=True, help="Request the expanded object view")
@click.option("--timeout", default=15.0, show_default=True, help="Heartbeat timeout in seconds")
@click.option("--max-retries", default=5, show_default=True, help="Reconnects before giving up")
@click.pass_obj
def tail(
    config: ClientConfig,
    cursor: str | None,
    include_types: str | None,
    exclude_types: str | None,
    expanded: bool,
    timeout: float,
    max_retries: int,
) -> None:
    """Stream deltas to stdout as JSON lines.

    Examples:

        # Follow everything from now on
        delta-stream tail

        # Only threads, resuming from a saved cursor
        delta-stream tail --cursor abc123 --include-types thread
    """
    if include_types and exclude_types:
        raise click.UsageError("--include-types and --exclude-types are mutually exclusive")

    try:
        stream_config = StreamConfig(streaming_timeout=timeout, max_restart_retries=max_retries)
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    try:
        failed = asyncio.run(
            _tail(
                config,
                stream_config,
                cursor,
                include_types=(include_types or "").split(","),
                exclude_types=(exclude_types or "").split(","),
                expanded=expanded,
            )
        )
    except KeyboardInterrupt:
        click.echo("\nStopped", err=True)
        return
    except DeltaStreamError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if failed:
        sys.exit(1)


async def _tail(
    config: ClientConfig,
    stream_config: StreamConfig,
    cursor: str | None,
    include_types: list[str],
    exclude_types: list[str],
    expanded: bool,
) -> bool:
    """Run a stream until it fails; return True on a terminal error."""
    async with DeltaClient(config, stream_config=stream_config) as client:
        stream = await client.start_stream(
            cursor,
            include_types=[t for t in include_types if t],
            exclude_types=[t for t in exclude_types if t],
            expanded=expanded,
        )
        try:
            async for event in stream:
                if _print_event(event):
                    return True
        finally:
            await stream.aclose()
    return False


def _print_event(event: StreamEvent) -> bool:
    """Write one event; return True if it was terminal."""
    if event.type == StreamEventType.DELTA.value:
        click.echo(json.dumps(event.data, ensure_ascii=False))
    elif event.type == StreamEventType.INFO.value:
        click.echo(event.data.get("message", ""), err=True)
    elif event.type == StreamEventType.ERROR.value:
        click.echo(f"Error: {event.data.get('error')}", err=True)
        return event.fatal
    elif event.type == StreamEventType.RESPONSE.value:
        click.echo(f"Connected (HTTP {event.data.get('status_code')})", err=True)
    return False


if __name__ == "__main__":
    main()
