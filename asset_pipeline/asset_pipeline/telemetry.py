"""
Logging and error-tracking setup shared by the long-running entry points.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.threading import ThreadingIntegration

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or os.getenv("LOG_LEVEL", "INFO"),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
        ],
    )


def init_sentry(component: str) -> bool:
    """
    Initialize Sentry error tracking when SENTRY_DSN is set.

    Returns:
        True if Sentry was initialized
    """
    sentry_dsn = os.getenv("SENTRY_DSN")
    if not sentry_dsn:
        logger.debug("SENTRY_DSN not set - error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=sentry_dsn,
        environment=os.getenv("SENTRY_ENVIRONMENT", "production"),
        release=os.getenv("SENTRY_RELEASE", f"asset-pipeline-{component}@0.1.0"),
        integrations=[
            ThreadingIntegration(propagate_hub=True),
        ],
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1")),
        profiles_sample_rate=float(os.getenv("SENTRY_PROFILES_SAMPLE_RATE", "0.1")),
    )
    sentry_sdk.set_tag("component", component)
    logger.info("Sentry error tracking initialized")
    return True


__all__ = ["configure_logging", "init_sentry", "LOG_FORMAT"]
