"""Sentry error tracking integration.

Initializes Sentry SDK if SENTRY_DSN env variable is set.
Does nothing otherwise, so it is safe to call unconditionally.
"""

import logging

from stream_gateway.core.config import settings

logger = logging.getLogger(__name__)


def init_sentry() -> None:
    """Initialize Sentry if SENTRY_DSN is configured."""
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        integrations=[FastApiIntegration(transaction_style="endpoint")],
    )
    logger.info("Sentry initialized (env=%s)", settings.app_env)


def report_error(exc: BaseException, **context) -> None:
    """Forward a caller-side failure to Sentry with feature context.

    No-op when Sentry is not configured; the failure is still logged.
    """
    logger.error("Reporting %s: %s (%s)", type(exc).__name__, exc, context or "no context")
    if not settings.sentry_dsn:
        return

    import sentry_sdk

    with sentry_sdk.new_scope() as scope:
        if context:
            scope.set_context("gateway", context)
        sentry_sdk.capture_exception(exc)
