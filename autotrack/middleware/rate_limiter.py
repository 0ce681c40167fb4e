"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in autotrack/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from autotrack.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Auth endpoints:   LOGIN_RATE_LIMIT (credential guessing)
        - Subscriptions:    60/minute
        - Notifications / directory: 200/minute
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    login_limit = app.config.get("LOGIN_RATE_LIMIT", "10 per minute")
    bp = app.blueprints.get("auth")
    if bp:
        limiter.limit(login_limit)(bp)

    bp = app.blueprints.get("subscriptions")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    for bp_name in ("notifications", "directory"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limits: auth %s, subscriptions %s, read %s",
        login_limit, WRITE_LIMIT, READ_LIMIT,
    )
