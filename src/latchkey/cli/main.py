"""Latchkey CLI — run the server and housekeeping jobs.

Usage:
    latchkey serve                   # Run the API with uvicorn
    latchkey cleanup                 # Delete expired verification codes + challenges
    latchkey cleanup --codes-only    # Only verification codes

`cleanup` is meant for an external scheduler (cron, k8s CronJob). Expired
rows are already ignored by every lookup; this just keeps the tables small.
"""

from __future__ import annotations

import asyncio
import concurrent.futures

import click

from latchkey import __version__


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop: normal CLI invocation
        return asyncio.run(coro)
    else:
        # Already inside an event loop (e.g. test runner), run in a thread
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


@click.group()
@click.version_option(version=__version__, prog_name="latchkey")
def main():
    """Latchkey — passwordless authentication service."""
    from latchkey.config import settings
    from latchkey.logging_config import configure_logging

    configure_logging(json_logs=settings.log_json)


@main.command()
@click.option("--host", default=None, help="Bind address (default: LATCHKEY_HOST)")
@click.option("--port", type=int, default=None, help="Port (default: LATCHKEY_PORT)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: str | None, port: int | None, reload: bool):
    """Run the HTTP API."""
    import uvicorn

    from latchkey.config import settings

    uvicorn.run(
        "latchkey.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


@main.command()
@click.option("--codes-only", is_flag=True, help="Skip WebAuthn challenges")
def cleanup(codes_only: bool):
    """Delete expired verification codes and WebAuthn challenges."""
    codes, challenges = _run(_cleanup_impl(codes_only))
    click.secho(f"Deleted {codes} expired verification code(s)", fg="green")
    if not codes_only:
        click.secho(f"Deleted {challenges} expired challenge(s)", fg="green")


async def _cleanup_impl(codes_only: bool) -> tuple[int, int]:
    from latchkey.db.engine import async_session_factory, engine
    from latchkey.services.challenge_store import ChallengeStore
    from latchkey.services.email_service import Mailer
    from latchkey.services.verification_service import EmailVerificationService

    try:
        async with async_session_factory() as db:
            codes = await EmailVerificationService(
                db, Mailer.from_settings()
            ).cleanup_expired_codes()
            challenges = 0
            if not codes_only:
                challenges = await ChallengeStore(db).cleanup_expired_challenges()
        return codes, challenges
    finally:
        await engine.dispose()


if __name__ == "__main__":
    main()
