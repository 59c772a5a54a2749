"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in esign/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from esign.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

SIGNING_LIMIT = "30/minute"
MANAGE_LIMIT = "120/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to the engine's blueprints.

    Limits (per remote IP):
        - Public signing / executed links:  30/minute  (token guessing)
        - Envelope management API:          120/minute
        - Health check:                     exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("signing")
    if bp:
        limiter.limit(SIGNING_LIMIT)(bp)

    bp = app.blueprints.get("envelopes")
    if bp:
        limiter.limit(MANAGE_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — signing: %s, envelopes: %s", SIGNING_LIMIT, MANAGE_LIMIT)
