"""
Sentry initialization for the realtime relay.
"""
import logging
from shared.config import settings

logger = logging.getLogger(__name__)

def init_sentry():
    """Initialize Sentry if DSN is provided."""
    if not settings.SENTRY_DSN:
        logger.info("ℹ️ Sentry DSN not provided. Error tracking disabled.")
        return

    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.httpx import HttpxIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration

        # Poll failures are logged at ERROR, so they become Sentry events
        logging_integration = LoggingIntegration(
            level=logging.INFO,
            event_level=logging.ERROR
        )

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.SENTRY_ENVIRONMENT,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            integrations=[
                FastApiIntegration(),
                HttpxIntegration(),
                logging_integration,
            ],
            release=settings.APP_VERSION,
            send_default_pii=False,
            max_breadcrumbs=50,
        )
        logger.info("✅ Sentry initialized")
    except ImportError:
        logger.warning("⚠️ sentry-sdk not installed. Error tracking disabled.")
    except Exception as e:
        logger.error(f"❌ Failed to initialize Sentry: {e}")
