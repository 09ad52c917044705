"""
Logging and Sentry setup
Shared by the API process (main.py) and the Dramatiq worker (worker.py)
"""
import logging

from app.core.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Chatty at INFO during multi-thousand-request syncs
NOISY_LOGGERS = ("httpx", "httpcore", "hpack")


def configure_logging(settings: Settings) -> None:
    """Root logging for a process. DEBUG outside production."""
    logging.basicConfig(
        level=logging.INFO if settings.environment == "production" else logging.DEBUG,
        format=LOG_FORMAT
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def init_sentry(settings: Settings, component: str, with_fastapi: bool = False) -> bool:
    """
    Initialize Sentry when SENTRY_DSN is set.

    ERROR log records become Sentry events; INFO records become breadcrumbs.

    Returns:
        True if Sentry was initialized
    """
    logger = logging.getLogger(__name__)

    if not settings.sentry_dsn:
        logger.info(f"ℹ️  Sentry not configured for {component} (SENTRY_DSN not set)")
        return False

    try:
        import sentry_sdk
        from sentry_sdk.integrations.logging import LoggingIntegration

        integrations = [LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)]
        if with_fastapi:
            from sentry_sdk.integrations.fastapi import FastApiIntegration
            integrations.append(FastApiIntegration())

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=0.1,
            integrations=integrations,
        )
        sentry_sdk.set_tag("component", component)
    except Exception as e:
        logger.warning(f"⚠️  Failed to initialize Sentry for {component}: {e}")
        return False

    logger.info(f"✅ Sentry initialized for {component}")
    return True
