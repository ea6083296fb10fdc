"""
בדיקות ל-Middleware - wms_sync/core/middleware.py

מכסה:
- CorrelationIdMiddleware: הפצת correlation ID בבקשות
- RequestLoggingMiddleware: לוג בקשות כולל כותרות ה-webhook
- WebhookRateLimitMiddleware: הגבלת קצב על נקודת ה-webhook
- Exception handlers: טיפול ב-AppException ו-Exception גנרי
"""
import time
from unittest.mock import AsyncMock, patch

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from wms_sync.core.exceptions import ErrorCode, NotFoundException, ValidationException
from wms_sync.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    WebhookRateLimitMiddleware,
    app_exception_handler,
    generic_exception_handler,
)


def _hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def _webhook(request: Request) -> PlainTextResponse:
    return PlainTextResponse("webhook ok")


def _error(request: Request) -> PlainTextResponse:
    raise ValueError("שגיאת בדיקה")


def _build_app(*, middlewares: list[tuple] | None = None) -> Starlette:
    """בונה אפליקציית Starlette מינימלית עם middleware."""
    app = Starlette(routes=[
        Route("/test", _hello),
        Route("/api/webhooks/wms", _webhook, methods=["GET", "POST"]),
        Route("/error", _error),
    ])
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    return app


class TestCorrelationIdMiddleware:

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")

        assert response.status_code == 200
        assert response.headers["x-correlation-id"]

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "wms-trace-1"})

        assert response.headers["x-correlation-id"] == "wms-trace-1"

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            first = client.get("/test").headers["x-correlation-id"]
            second = client.get("/test").headers["x-correlation-id"]

        assert first != second


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_webhook_headers_are_logged(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with patch("wms_sync.core.middleware.logger") as mock_logger:
            with TestClient(app) as client:
                response = client.post(
                    "/api/webhooks/wms",
                    headers={"X-Webhook-Id": "delivery-1", "X-Webhook-Group": "order"},
                )

        assert response.status_code == 200
        started = mock_logger.info.call_args_list[0]
        assert started.kwargs["extra_data"]["x_webhook_id"] == "delivery-1"
        assert started.kwargs["extra_data"]["x_webhook_group"] == "order"
        assert "x_webhook_action" not in started.kwargs["extra_data"]

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/error")

        assert response.status_code == 500


class TestWebhookRateLimitMiddleware:

    @pytest.mark.unit
    def test_blocks_requests_over_limit(self) -> None:
        app = _build_app(middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 3, "window_seconds": 60})])
        with TestClient(app) as client:
            for _ in range(3):
                assert client.post("/api/webhooks/wms").status_code == 200

            # הבקשה הרביעית חסומה
            response = client.post("/api/webhooks/wms")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"

    @pytest.mark.unit
    def test_non_webhook_paths_not_limited(self) -> None:
        app = _build_app(middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})])
        with TestClient(app) as client:
            assert client.post("/api/webhooks/wms").status_code == 200
            assert client.post("/api/webhooks/wms").status_code == 429

            assert client.get("/test").status_code == 200
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_cleanup_removes_old_entries(self) -> None:
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)
        now = time.time()
        mw._requests["1.2.3.4"] = [now - 120, now - 90, now - 30, now]

        mw._cleanup_window("1.2.3.4", now)

        assert len(mw._requests["1.2.3.4"]) == 2

    @pytest.mark.unit
    def test_cleanup_deletes_empty_ip(self) -> None:
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)
        now = time.time()
        mw._requests["1.2.3.4"] = [now - 120]

        mw._cleanup_window("1.2.3.4", now)

        assert "1.2.3.4" not in mw._requests

    @pytest.mark.unit
    def test_429_response_includes_correlation_id(self) -> None:
        app = _build_app(middlewares=[
            (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60}),
            (CorrelationIdMiddleware, {}),
        ])
        with TestClient(app) as client:
            client.post("/api/webhooks/wms")
            response = client.post("/api/webhooks/wms")

        assert response.status_code == 429
        assert "x-correlation-id" in response.headers


class TestExceptionHandlers:

    @pytest.mark.unit
    async def test_handles_not_found(self) -> None:
        exc = NotFoundException("Order", 42, ErrorCode.ORDER_NOT_FOUND)
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/admin/orders/42/state"

        response = await app_exception_handler(mock_request, exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 404
        assert b"ERR_6004" in response.body
        assert "x-correlation-id" in response.headers

    @pytest.mark.unit
    async def test_handles_validation_exception(self) -> None:
        exc = ValidationException(message="payload must be an object", field="payload")
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/webhooks/wms"

        response = await app_exception_handler(mock_request, exc)

        assert response.status_code == 400

    @pytest.mark.unit
    async def test_does_not_leak_internal_details(self) -> None:
        exc = RuntimeError("database connection failed on host 10.0.0.1")
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/admin/sync/everything"

        response = await generic_exception_handler(mock_request, exc)

        body = response.body.decode()
        assert response.status_code == 500
        assert "10.0.0.1" not in body
        assert "ERR_1000" in body


class TestFullStack:

    @pytest.mark.unit
    async def test_correlation_id_on_app_responses(self, test_client) -> None:
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
