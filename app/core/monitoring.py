import time
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger
from app.config import settings


class JSONLogFormatter(jsonlogger.JsonFormatter):
    """One JSON object per line, tagged with the service name"""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        # format fields arrive as None when the record lacks them
        if not log_record.get('timestamp'):
            log_record['timestamp'] = time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created))
        log_record['level'] = (log_record.get('level') or record.levelname).upper()
        log_record['logger'] = record.name
        log_record.setdefault('service', settings.APP_NAME)


def setup_logging(level: int = logging.INFO):
    root = logging.getLogger()
    # reloading the app must not stack handlers
    if any(isinstance(h.formatter, JSONLogFormatter) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JSONLogFormatter('%(timestamp)s %(level)s %(message)s'))
    root.addHandler(handler)
    root.setLevel(level)


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Stamps X-Process-Time and warns about requests slower than SLOW_REQUEST_SECONDS"""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        if elapsed > settings.SLOW_REQUEST_SECONDS:
            logging.getLogger("sharetrack.performance").warning(
                f"Slow request: {request.method} {request.url.path} took {elapsed:.4f}s",
                extra={"path": request.url.path, "method": request.method, "duration": round(elapsed, 4)},
            )

        response.headers["X-Process-Time"] = f"{elapsed:.6f}"
        return response
