import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from tgcomment.metrics import record_http_request


# Correlation id of the current HTTP request or batch run
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
# Pipeline stage of the current batch run (processor, notifier, updates)
stage_ctx: ContextVar[Optional[str]] = ContextVar("stage", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding ISO-8601 timestamps, correlation id and stage."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            now = datetime.now(timezone.utc)
            log_record['ts'] = now.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id
        if 'stage' not in log_record:
            stage = stage_ctx.get()
            if stage:
                log_record['stage'] = stage


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the relay.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    # Route Uvicorn loggers through the JSON handler
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Disable uvicorn.access logger since we have our own middleware
    logging.getLogger("uvicorn.access").disabled = True

    return logger


@contextmanager
def batch_context(stage: str) -> Iterator[str]:
    """
    Tag every log line emitted during one batch run with a shared run id.

    Yields:
        The run id
    """
    run_id = uuid.uuid4().hex[:12]
    id_token = request_id_ctx.set(run_id)
    stage_token = stage_ctx.set(stage)
    try:
        yield run_id
    finally:
        stage_ctx.reset(stage_token)
        request_id_ctx.reset(id_token)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line per HTTP request.

    Log keys: ts, level, request_id, method, path, status, latency_ms, plus
    update_id and result for webhook deliveries. An incoming X-Request-ID is
    reused as the correlation id.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            elapsed = time.perf_counter() - started
            path = request.url.path

            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, elapsed)

            log_data = {
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            log_data.update(getattr(request.state, "webhook_log_data", {}))

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logging.getLogger("tgcomment.requests").log(level, "Request completed", extra=log_data)
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, update_id: Optional[int] = None, result: Optional[str] = None):
    """
    Attach webhook fields to the request log line written by the middleware.

    Args:
        request: FastAPI request object
        update_id: update_id from the platform payload
        result: update kind, "error", "invalid_secret" or "invalid_json"
    """
    fields = {}
    if update_id is not None:
        fields["update_id"] = update_id
    if result is not None:
        fields["result"] = result
    request.state.webhook_log_data = fields
