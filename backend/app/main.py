"""Standalone agent entry point (``python -m app.main``) for deployments without Celery."""

import asyncio
import os
import signal

import structlog

from app.agent import build_agent
from app.core.config import settings
from app.core.database import AsyncSessionLocal, engine, init_db
from app.core.logging import configure_logging

logger = structlog.get_logger()


def init_sentry() -> bool:
    """
    Initialize Sentry error tracking when SENTRY_DSN is set.

    Returns:
        True if Sentry was initialized
    """
    if not settings.SENTRY_DSN:
        logger.info("sentry.disabled", reason="SENTRY_DSN not set")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.celery import CeleryIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            SqlalchemyIntegration(),  # Track database queries
            CeleryIntegration(),  # Track Celery tasks
        ],
        send_default_pii=False,
        release=f"finops-autopilot@{os.getenv('GIT_COMMIT', 'dev')}",
        attach_stacktrace=True,
    )
    logger.info("sentry.initialized", environment=settings.SENTRY_ENVIRONMENT)
    return True


async def run() -> None:
    """Create tables, seed configuration and run cycles until SIGINT/SIGTERM."""
    await init_db()

    agent = build_agent(settings, AsyncSessionLocal)
    await agent.start()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, agent.runner.stop)
        except NotImplementedError:
            # Signal handlers are unavailable on Windows event loops
            pass

    try:
        await agent.run_forever()
    finally:
        await agent.shutdown()
        await engine.dispose()


def main() -> None:
    configure_logging()
    init_sentry()
    logger.info(
        "agent.starting",
        app=settings.APP_NAME,
        environment=settings.APP_ENV,
        tenant_id=settings.SYSTEM_TENANT_ID,
        interval_seconds=settings.AGENT_CYCLE_INTERVAL_SECONDS,
    )
    asyncio.run(run())


if __name__ == "__main__":
    main()
