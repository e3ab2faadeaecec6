"""Retry worker process.

Runs the persisted retry sweep against the shared database. Any number
of workers may run at once; claims keep them from firing the same
attempt twice.

Usage:
    ```bash
    python -m hookline.worker            # sweep until SIGINT/SIGTERM
    python -m hookline.worker --once     # one sweep, then exit
    python -m hookline.worker cleanup --days 30
    ```
"""

from __future__ import annotations

import asyncio
import signal

import anyio
import click

from hookline.config import Settings, load_settings
from hookline.exceptions import ConfigurationError
from hookline.logging import configure_logging, get_logger, log_context
from hookline.service import WebhookService
from hookline.webhooks import SweepResult

logger = get_logger(__name__)


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread
            logger.debug("signal_handler_unavailable", signal=sig.name)


async def run_worker(
    *,
    once: bool = False,
    settings: Settings | None = None,
    service: WebhookService | None = None,
    stop_event: asyncio.Event | None = None,
) -> SweepResult | None:
    """Run the sweep loop.

    Args:
        once: Run a single sweep and return its result.
        settings: Optional settings. Uses environment if None.
        service: Optional pre-built service (tests).
        stop_event: Set to stop the loop. Signal handlers set it by default.

    Returns:
        The SweepResult when once is True, otherwise None.
    """
    settings = settings or (service.settings if service is not None else load_settings())
    service = service or WebhookService.create(settings)

    async with service:
        with log_context(worker_id=service.worker_id):
            logger.info("worker_started", once=once, database=service.storage.dialect_name)
            if once:
                result = await service.sweep()
                logger.info(
                    "worker_finished",
                    reclaimed=result.reclaimed,
                    claimed=result.claimed,
                    delivered=result.delivered,
                    errors=result.errors,
                )
                return result

            if stop_event is None:
                stop_event = asyncio.Event()
                _install_stop_handlers(stop_event)
            await service.run_sweeper(stop_event)
    return None


async def run_cleanup(days: int | None = None, settings: Settings | None = None) -> int:
    """Delete delivery history older than the retention window."""
    async with WebhookService.create(settings) as service:
        return await service.cleanup_old_deliveries(days)


@click.group(invoke_without_command=True)
@click.option("--once", is_flag=True, help="Run one sweep and exit")
@click.pass_context
def main(ctx: click.Context, once: bool) -> None:
    """Hookline retry worker. Without a subcommand, runs the sweep loop."""
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        raise click.ClickException(exc.message) from exc
    configure_logging(level=settings.log_level, format=settings.log_format)
    ctx.obj = settings
    if ctx.invoked_subcommand is not None:
        return

    async def _run() -> None:
        await run_worker(once=once, settings=settings)

    try:
        anyio.run(_run)
    except Exception as exc:
        raise click.ClickException(str(exc)) from exc


@main.command("cleanup")
@click.option("--days", type=click.IntRange(min=1), default=None, help="Retention in days")
@click.pass_obj
def cleanup(settings: Settings, days: int | None) -> None:
    """Delete delivery attempts older than the retention window."""

    async def _run() -> int:
        return await run_cleanup(days, settings)

    try:
        removed = anyio.run(_run)
    except Exception as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Removed {removed} delivery attempt(s)")


if __name__ == "__main__":
    main()
