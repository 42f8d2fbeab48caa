"""
Core views providing infrastructure endpoints.
"""

import logging

from django.core.cache import cache
from django.db import DatabaseError, connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Health check endpoint for Docker, Kubernetes probes and load balancers.

    The database is required. Redis backs the payout locks and the Celery
    broker, so an unreachable cache is reported as "degraded" while the
    endpoint still answers 200: releases keep committing and the recovery
    sweep enqueues their payouts once Redis is back.

    HTTP Status Codes:
        200: Database reachable
        503: Database unreachable

    Example Response:
        {"status": "healthy", "database": "connected", "cache": "connected"}
    """
    health_status = {"status": "healthy", "database": "connected", "cache": "connected"}

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except DatabaseError:
        logger.error("Health check: database unreachable", exc_info=True)
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"
        return JsonResponse(health_status, status=503)

    # IGNORE_EXCEPTIONS makes the cache return None instead of raising
    cache.set("health_check", "ok", timeout=1)
    if cache.get("health_check") != "ok":
        health_status["cache"] = "disconnected"
        health_status["status"] = "degraded"

    return JsonResponse(health_status)
