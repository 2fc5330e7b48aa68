"""
HTTP service for payment webhooks and the scheduled expiry sweep.

Routes:
- POST /webhook/stripe: verified Stripe events; wallet top-ups are
  credited once per event id
- POST /cron/expire-appointments: runs one expiry sweep, guarded by a
  bearer cron secret
- GET /health: service metrics
"""

import hmac
import json
import time
from collections import Counter, deque
from typing import Dict, Optional

import stripe
from aiohttp import web
from aiohttp.web import Request, Response
from stripe.error import SignatureVerificationError

from config import settings
from engine.registry import Engines, build_configured_engines
from payments import handle_webhook
from scheduler.expiry import ExpirySweeper, setup_scheduler, shutdown_scheduler
from utils.exceptions import WebhookPayloadError, WebhookVerificationError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="webhook.log")

MAX_REQUEST_BODY_SIZE = 1024 * 1024  # 1MB
_MAX_EVENT_HISTORY = 1000

ENGINES_KEY = web.AppKey("engines", Engines)

# Recent events for the health endpoint; bounded
_recent_events: deque = deque(maxlen=_MAX_EVENT_HISTORY)

_metrics = {
    "total_events": 0,
    "successful_events": 0,
    "failed_events": 0,
    "verification_failures": 0,
    "validation_failures": 0,
    "duplicate_events": 0,
    "sweep_runs": 0,
    "sweep_failures": 0,
    "last_sweep_at": None,
    "start_time": time.time(),
}


def _error(error: str, message: str, status: int) -> Response:
    return web.json_response(
        {"status": "error", "error": error, "message": message}, status=status
    )


def _verify_webhook_signature(payload: bytes, signature: Optional[str]) -> Dict:
    """
    Verify the Stripe-Signature header and parse the event.

    Without a webhook secret, test-mode keys accept the body unverified;
    live keys refuse.

    Raises:
        WebhookVerificationError: If the signature is missing or wrong
        WebhookPayloadError: If an unverified body is not JSON
    """
    if not settings.stripe_webhook_secret:
        if not (settings.stripe_secret_key or "").startswith("sk_test_"):
            raise WebhookVerificationError(
                "STRIPE_WEBHOOK_SECRET is required with live Stripe keys"
            )
        logger.warning("STRIPE_WEBHOOK_SECRET not set; accepting unverified test webhook")
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise WebhookPayloadError(f"Invalid JSON payload: {e}") from e

    if not signature:
        raise WebhookVerificationError("Missing Stripe-Signature header")

    try:
        return stripe.Webhook.construct_event(
            payload, signature, settings.stripe_webhook_secret
        )
    except ValueError as e:
        raise WebhookVerificationError(f"Invalid payload: {e}") from e
    except SignatureVerificationError as e:
        raise WebhookVerificationError(f"Invalid signature: {e}") from e


def _validate_webhook_payload(payload: Dict) -> None:
    """
    Check the event envelope: non-empty string ``id`` and ``type``, object ``data``.

    Raises:
        WebhookPayloadError: If the envelope is malformed
    """
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook payload must be a JSON object")

    for field in ("type", "id"):
        value = payload.get(field)
        if not isinstance(value, str) or not value:
            raise WebhookPayloadError(f"Webhook '{field}' must be a non-empty string")

    if not isinstance(payload.get("data"), dict):
        raise WebhookPayloadError("Webhook payload 'data' field must be an object")


def _is_authorized_cron(request: Request) -> bool:
    """Check the ``Authorization: Bearer <cron secret>`` header in constant time."""
    if not settings.cron_secret:
        return False
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme != "Bearer" or not token:
        return False
    return hmac.compare_digest(token.encode(), settings.cron_secret.encode())


@web.middleware
async def security_headers_middleware(request: Request, handler):
    """Add security headers to all responses."""
    response = await handler(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Strict-Transport-Security"] = (
        "max-age=31536000; includeSubDomains"
    )

    # Webhook and cron endpoints are POST only
    if request.path.startswith(("/webhook/", "/cron/")):
        response.headers["Allow"] = "POST"

    return response


async def _read_body(request: Request) -> Optional[bytes]:
    """Read the raw body, or None when it exceeds the size limit."""
    declared = request.headers.get("Content-Length", "")
    if declared.isdigit() and int(declared) > MAX_REQUEST_BODY_SIZE:
        return None
    body = await request.read()
    return None if len(body) > MAX_REQUEST_BODY_SIZE else body


async def stripe_webhook_handler(request: Request) -> Response:
    """
    Handle a Stripe event.

    Returns 401 for a bad signature, 400 for a malformed event, 413 for an
    oversized body and 500 when processing fails. Redelivered events are
    acknowledged with 200 without being applied again.
    """
    event_id = event_type = "unknown"

    try:
        raw_body = await _read_body(request)
        if raw_body is None:
            logger.warning("Rejected oversized webhook body")
            _metrics["validation_failures"] += 1
            return _error(
                "request_too_large",
                f"Request body exceeds maximum size of {MAX_REQUEST_BODY_SIZE} bytes",
                413,
            )
        if not raw_body:
            logger.warning("Received empty webhook payload")
            _metrics["validation_failures"] += 1
            return _error("empty_payload", "Empty payload", 400)

        payload = _verify_webhook_signature(raw_body, request.headers.get("Stripe-Signature"))
        _validate_webhook_payload(payload)
        event_id, event_type = payload["id"], payload["type"]
        logger.info(f"Received Stripe webhook: event_id={event_id}, type={event_type}")

        engines = request.app[ENGINES_KEY]
        result = await handle_webhook(payload, store=engines.store, ledger=engines.ledger)
    except WebhookVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        _metrics["verification_failures"] += 1
        return _error("verification_failed", "Invalid webhook signature", 401)
    except WebhookPayloadError as e:
        logger.warning(f"Invalid webhook payload ({event_id}): {e}")
        _metrics["validation_failures"] += 1
        return _error("validation_failed", str(e), 400)
    except Exception as e:
        logger.error(
            f"Unexpected error processing webhook {event_id} ({event_type}): {e}",
            exc_info=True,
        )
        _metrics["total_events"] += 1
        _metrics["failed_events"] += 1
        return _error(
            "processing_failed", "Internal server error while processing webhook", 500
        )

    _metrics["total_events"] += 1
    body = {"status": "success", "event_id": event_id, "event_type": event_type}

    if result.get("status") == "duplicate":
        _metrics["duplicate_events"] += 1
        logger.info(f"Duplicate webhook event {event_id}; already processed")
        return web.json_response(dict(body, message="Event already processed"))

    _metrics["successful_events"] += 1
    _recent_events.append({"id": event_id, "type": event_type, "timestamp": time.time()})
    logger.info(f"Processed webhook {event_id} ({event_type}): {result.get('status')}")
    return web.json_response(dict(body, result=result))


async def expire_appointments_handler(request: Request) -> Response:
    """
    Run one expiry sweep on behalf of an external cron.

    Returns 401 unless the request carries the configured cron secret,
    200 with the sweep report when every modality swept cleanly and 500
    with the same report otherwise.
    """
    if not _is_authorized_cron(request):
        logger.warning("Rejected unauthorized expiry sweep request")
        return _error("unauthorized", "Unauthorized", 401)

    report = await ExpirySweeper(request.app[ENGINES_KEY]).run()
    _metrics["sweep_runs"] += 1
    _metrics["last_sweep_at"] = time.time()
    if not report.success:
        _metrics["sweep_failures"] += 1

    return web.json_response(
        {
            "status": "success" if report.success else "error",
            "total_transitions": report.total_transitions,
            "report": report.model_dump(mode="json"),
        },
        status=200 if report.success else 500,
    )


async def health_check(request: Request) -> Response:
    """
    Health check endpoint with service metrics.

    Returns:
        JSON response with service status, metrics, and configuration info
    """
    counters = {k: v for k, v in _metrics.items() if k != "start_time"}
    total = _metrics["total_events"]
    success_rate = _metrics["successful_events"] / total * 100 if total else 0.0

    return web.json_response(
        {
            "status": "ok",
            "service": "telehealth-escrow",
            "timestamp": time.time(),
            "uptime_hours": round((time.time() - _metrics["start_time"]) / 3600, 2),
            "metrics": dict(
                counters,
                success_rate_percent=round(success_rate, 2),
                recent_events_count=len(_recent_events),
                recent_event_types=dict(Counter(e["type"] for e in _recent_events)),
            ),
            "configuration": {
                "storage_backend": settings.storage_backend,
                "webhook_secret_configured": bool(settings.stripe_webhook_secret),
                "cron_secret_configured": bool(settings.cron_secret),
                "max_request_size_bytes": MAX_REQUEST_BODY_SIZE,
                "event_history_size": _MAX_EVENT_HISTORY,
            },
        }
    )


async def _start_scheduler(app: web.Application) -> None:
    setup_scheduler(ExpirySweeper(app[ENGINES_KEY]))


async def _stop_scheduler(app: web.Application) -> None:
    shutdown_scheduler()


def create_app(engines: Optional[Engines] = None) -> web.Application:
    """
    Create aiohttp application with middleware and routes.

    Args:
        engines: Engines to serve; built on the configured store if omitted

    With SCHEDULER_ENABLED the expiry sweep also runs in-process on an
    interval, started and stopped with the application.
    """
    app = web.Application(middlewares=[security_headers_middleware])
    app[ENGINES_KEY] = engines or build_configured_engines()

    app.router.add_post("/webhook/stripe", stripe_webhook_handler)
    app.router.add_post("/cron/expire-appointments", expire_appointments_handler)
    app.router.add_get("/health", health_check)

    if settings.scheduler_enabled:
        app.on_startup.append(_start_scheduler)
        app.on_cleanup.append(_stop_scheduler)

    return app


if __name__ == "__main__":
    # Production deployments should run this under a process manager with
    # STRIPE_WEBHOOK_SECRET and CRON_SECRET configured.
    logger.info(f"Starting webhook server on {settings.host}:{settings.port}")
    web.run_app(create_app(), host=settings.host, port=settings.port)
