"""Request parsing and response helpers shared by every route module."""
from __future__ import annotations

import datetime as dt
import decimal
import json
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from botocore.exceptions import BotoCoreError, ClientError
from starlette.requests import Request
from starlette.responses import JSONResponse

from .services.aws import to_iso

logger = logging.getLogger(__name__)


class RequestValidationError(ValueError):
    """Missing or malformed request input (HTTP 400)."""


class NotFoundError(LookupError):
    """The requested session or resource does not exist (HTTP 404)."""


def _json_default(value: Any) -> Any:
    if isinstance(value, dt.datetime):
        return to_iso(value)
    if isinstance(value, dt.date):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class ApiJSONResponse(JSONResponse):
    """JSON response that understands the types boto3 hands back."""

    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
            default=_json_default,
        ).encode("utf-8")


def dumps(content: Any) -> str:
    return json.dumps(content, default=_json_default)


def cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Headers": "Authorization,Content-Type",
        "Access-Control-Allow-Methods": "GET,POST,PUT,DELETE,OPTIONS",
    }


def json_response(content: Any, *, status_code: int = 200) -> ApiJSONResponse:
    return ApiJSONResponse(content, status_code=status_code, headers=cors_headers())


def error_response(message: str, *, status_code: int, code: Optional[str] = None) -> ApiJSONResponse:
    body = {"error": code or "error", "message": message}
    return ApiJSONResponse(body, status_code=status_code, headers=cors_headers())


async def options_handler(request: Request) -> JSONResponse:
    """Handle CORS preflight requests."""
    return JSONResponse({}, status_code=200, headers=cors_headers())


async def read_json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (ValueError, UnicodeDecodeError) as exc:
        raise RequestValidationError("Request body must be valid JSON") from exc
    if not isinstance(body, dict):
        raise RequestValidationError("Request body must be a JSON object")
    return body


def require(source: Any, name: str) -> Any:
    """Fetch *name* from a body dict or query params, 400 when absent or blank."""
    value = source.get(name) if source is not None else None
    if value is None or (isinstance(value, str) and not value.strip()):
        raise RequestValidationError(f"{name} is required")
    return value


def session_id_from(request: Request, body: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """Caller session id from the body or query, under either spelling."""
    for source in (body or {}, request.query_params):
        for key in ("sessionId", "session_id"):
            value = source.get(key)
            if value:
                return value
    return None


def parse_positive_int(value: Optional[Any], *, default: int, name: str = "value") -> int:
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise RequestValidationError(f"Invalid integer value '{value}' for {name}") from exc
    if parsed <= 0:
        raise RequestValidationError(f"{name} must be greater than zero")
    return parsed


def parse_optional_int(value: Optional[Any], *, name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise RequestValidationError(f"Invalid integer value '{value}' for {name}") from exc


def parse_bool(value: Optional[Any], *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in {"true", "1", "yes", "y", "on"}:
        return True
    if lowered in {"false", "0", "no", "n", "off"}:
        return False
    return default


def split_csv(raw: Optional[str]) -> Optional[Iterable[str]]:
    if not raw:
        return None
    values = [item.strip() for item in raw.split(",") if item.strip()]
    return values or None


def handle_errors(failure_message: str, code: str) -> Callable:
    """Map exceptions raised by an endpoint to the JSON error envelope.

    Invalid caller input becomes 400, unknown sessions 404 and everything else
    500 with ``"<failure_message>: <underlying message>"``.
    """

    def decorator(endpoint: Callable) -> Callable:
        async def wrapper(request: Request):
            try:
                return await endpoint(request)
            except NotFoundError as exc:
                return error_response(str(exc), status_code=404, code="not_found")
            except RequestValidationError as exc:
                return error_response(str(exc), status_code=400, code="invalid_request")
            except (ClientError, BotoCoreError) as exc:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc)
                return error_response(f"{failure_message}: {exc}", status_code=500, code=code)
            except Exception as exc:
                logger.exception("%s %s failed: %s", request.method, request.url.path, exc)
                return error_response(f"{failure_message}: {exc}", status_code=500, code=code)

        wrapper.__name__ = endpoint.__name__
        wrapper.__doc__ = endpoint.__doc__
        return wrapper

    return decorator
