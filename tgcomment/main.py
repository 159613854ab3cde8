import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Header, HTTPException, Request, Response, status
from starlette.concurrency import run_in_threadpool

from tgcomment.errors import RelayError
from tgcomment.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from tgcomment.metrics import get_metrics, get_metrics_content_type
from tgcomment.relay import Relay
from tgcomment.schemas import ErrorResponse, HealthResponse, WebhookResponse
from tgcomment.storage import check_db_health, init_db
from tgcomment.utils import verify_secret_token

logger = logging.getLogger(__name__)


def create_app(relay: Relay) -> FastAPI:
    """
    Build the HTTP surface around a configured relay.

    Serve with e.g. `uvicorn --factory mypackage.app:build` where `build`
    constructs the Relay with the deployment's collaborators and returns
    create_app(relay).
    """
    settings = relay.settings
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for startup and shutdown events.
        - Startup: create the queue tables
        """
        init_db()
        yield

    app = FastAPI(
        title="Comment Relay",
        description="Relays consultation comments between the site and the messaging platform",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.relay = relay

    # Add request logging middleware
    app.add_middleware(RequestLoggingMiddleware)

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """
        Liveness probe - always returns 200 once the app is running.
        """
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(response: Response) -> HealthResponse:
        """
        Readiness probe - returns 200 only if:
        1. TELEGRAM_BOT_TOKEN is set
        2. DB is reachable and the queue tables exist

        Otherwise returns 503 (Service Unavailable).
        """
        if not settings.TELEGRAM_BOT_TOKEN:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="TELEGRAM_BOT_TOKEN not configured")

        if not check_db_health():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

        return HealthResponse(status="ready")

    # =========================================================================
    # Webhook Route
    # =========================================================================

    @app.post(
        "/webhook",
        response_model=WebhookResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Malformed body"},
            401: {"model": ErrorResponse, "description": "Invalid secret token"},
        },
    )
    async def webhook(
        request: Request,
        secret_token: Annotated[str | None, Header(alias="X-Telegram-Bot-Api-Secret-Token")] = None,
    ) -> WebhookResponse:
        """
        Receive one platform update.

        - Checks X-Telegram-Bot-Api-Secret-Token when WEBHOOK_SECRET is set
        - Dispatches the update to the relay
        - Answers {"ok": true} for every readable update, so the platform
          does not redeliver updates the relay chose to ignore
        """
        if settings.WEBHOOK_SECRET and not verify_secret_token(secret_token or "", settings.WEBHOOK_SECRET):
            log_webhook_data(request, result="invalid_secret")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid secret token")

        raw_body = await request.body()
        try:
            update = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Invalid JSON: {e}")
            log_webhook_data(request, result="invalid_json")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid JSON")
        if not isinstance(update, dict):
            log_webhook_data(request, result="invalid_json")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="update must be an object")

        update_id = update.get("update_id")
        try:
            kind = await run_in_threadpool(relay.process_single_update, update)
        except RelayError as e:
            logger.error(f"Update {update_id} handled with errors: {e}")
            kind = "error"

        log_webhook_data(request, update_id=update_id, result=kind)
        return WebhookResponse(ok=True)

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    async def metrics() -> Response:
        """
        Expose Prometheus-style metrics.
        """
        return Response(content=get_metrics(), media_type=get_metrics_content_type())

    return app
