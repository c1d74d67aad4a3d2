"""HTTP surface for voucher gift submission and lookup."""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from giftflow.common.logging import logger, trace_id_ctx
from giftflow.common.metrics import (
    gift_requests_total,
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    rate_limited_total,
    submission_latency_seconds,
)
from giftflow.common.rate_limit import RateLimiter
from giftflow.services.delivery.service import DeliveryConsumer
from giftflow.services.vouchers.schemas import VoucherView
from giftflow.services.vouchers.service import SubmissionInProgress, SubmissionService
from giftflow.services.vouchers.validation import GiftValidationError

PROCESSING_FAILED = "Failed to process voucher gift"
IN_PROGRESS = "A request with this idempotency key is still being processed"


def _client_identity(request: Request, client_id: str | None) -> str:
    if client_id:
        return client_id
    return request.client.host if request.client else "unknown"


def create_app(
    service: SubmissionService,
    rate_limiter: RateLimiter | None = None,
    consumer: DeliveryConsumer | None = None,
    api_key: str | None = None,
    run_outbox_relay: bool = True,
    service_name: str = "vouchers",
) -> FastAPI:
    """Build the gift API around injected collaborators."""

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        relay_task = asyncio.create_task(service.outbox_publisher()) if run_outbox_relay else None
        yield
        if relay_task is not None:
            relay_task.cancel()

    app = FastAPI(title="GiftFlow Vouchers", lifespan=lifespan)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    def enforce_api_key(x_api_key: str | None) -> None:
        if api_key and x_api_key != api_key:
            raise HTTPException(status_code=401, detail="invalid API key")

    @app.post("/api/vouchers/gift")
    async def gift_voucher(
        request: Request,
        x_api_key: str | None = Header(default=None),
        x_client_id: str | None = Header(default=None),
        x_correlation_id: str | None = Header(default=None),
    ):
        """Create (or replay) a voucher gift.

        Validation failures answer 400 with every offending field, a resend
        racing an unfinished request with the same key answers 409 and storage
        failures answer an opaque 500.
        """

        enforce_api_key(x_api_key)
        trace_id_ctx.set(x_correlation_id or str(uuid4()))
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(
                status_code=400,
                content={
                    "success": False,
                    "error": {
                        "message": "Validation failed",
                        "fields": [{"field": "body", "message": "Request body must be valid JSON"}],
                    },
                },
            )

        headers = {}
        if rate_limiter is not None:
            amount = body.get("amount") if isinstance(body, dict) else None
            decision = rate_limiter.hit(_client_identity(request, x_client_id), amount)
            if not decision.allowed:
                rate_limited_total.labels(service=service_name).inc()
                return JSONResponse(
                    status_code=429,
                    content={
                        "success": False,
                        "error": "Too many requests, please try again later",
                        "retryAfter": decision.retry_after,
                    },
                    headers={"Retry-After": str(decision.retry_after)},
                )
            headers = {
                "X-RateLimit-Limit": str(decision.limit),
                "X-RateLimit-Remaining": str(decision.remaining),
                "X-RateLimit-Reset": str(decision.retry_after),
            }

        gift_requests_total.labels(service=service_name).inc()
        with submission_latency_seconds.labels(service=service_name).time():
            try:
                result = service.submit(body)
            except GiftValidationError as exc:
                return JSONResponse(
                    status_code=400,
                    content={
                        "success": False,
                        "error": {
                            "message": "Validation failed",
                            "fields": [e.model_dump() for e in exc.errors],
                        },
                    },
                    headers=headers,
                )
            except SubmissionInProgress:
                return JSONResponse(
                    status_code=409,
                    content={"success": False, "error": IN_PROGRESS},
                    headers={**headers, "Retry-After": "1"},
                )
            except Exception:
                logger.exception("gift_submission_failed")
                return JSONResponse(
                    status_code=500,
                    content={"success": False, "error": PROCESSING_FAILED},
                    headers=headers,
                )
        return JSONResponse(
            status_code=200,
            content={"success": True, "data": result.model_dump(by_alias=True)},
            headers=headers,
        )

    @app.get("/api/vouchers/{voucher_id}")
    def get_voucher(voucher_id: str):
        """Fetch the current state of one voucher."""

        voucher = service.get_voucher(voucher_id)
        if voucher is None:
            raise HTTPException(status_code=404, detail="voucher not found")
        view = VoucherView.model_validate(voucher, from_attributes=True)
        return {"success": True, "data": view.model_dump(mode="json", by_alias=True)}

    @app.post("/api/simulate/process-voucher")
    async def simulate_process_voucher(request: Request):
        """Run one delivery message body through the consumer (local development)."""

        if consumer is None:
            raise HTTPException(status_code=404, detail="local processing disabled")
        body = await request.json()
        try:
            await consumer.process_local(body)
        except Exception:
            logger.exception("simulated_processing_failed")
            return JSONResponse(status_code=500, content={"success": False, "error": "Failed to process voucher"})
        return {"success": True, "message": "Voucher processed successfully"}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
