"""Tests for request parsing helpers and environment settings."""

from __future__ import annotations

import datetime as dt
import decimal
import json

import pytest
from starlette.applications import Starlette
from starlette.routing import Route
from starlette.testclient import TestClient

from qbusiness_tools.settings import Settings
from qbusiness_tools.web import (
    NotFoundError,
    RequestValidationError,
    dumps,
    handle_errors,
    parse_bool,
    parse_optional_int,
    parse_positive_int,
    require,
    split_csv,
)


class TestParsing:
    def test_positive_int_default_and_value(self) -> None:
        assert parse_positive_int(None, default=5) == 5
        assert parse_positive_int("7", default=5) == 7

    @pytest.mark.parametrize("value", ["0", "-1", "abc"])
    def test_positive_int_rejects(self, value: str) -> None:
        with pytest.raises(RequestValidationError):
            parse_positive_int(value, default=5, name="limit")

    def test_optional_int(self) -> None:
        assert parse_optional_int("", name="startTime") is None
        assert parse_optional_int("-5", name="startTime") == -5
        with pytest.raises(RequestValidationError):
            parse_optional_int("soon", name="startTime")

    @pytest.mark.parametrize("value,expected", [("true", True), ("0", False), ("maybe", True), (None, True)])
    def test_bool(self, value, expected: bool) -> None:
        assert parse_bool(value, default=True) is expected

    def test_split_csv(self) -> None:
        assert split_csv(" a, ,b ") == ["a", "b"]
        assert split_csv(",") is None

    def test_require_blank_string(self) -> None:
        with pytest.raises(RequestValidationError, match="key is required"):
            require({"key": "  "}, "key")

    def test_dumps_handles_aws_types(self) -> None:
        payload = json.loads(
            dumps({"when": dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc), "n": decimal.Decimal("3"), "f": decimal.Decimal("1.5")})
        )
        assert payload == {"when": "2024-01-01T00:00:00Z", "n": 3, "f": 1.5}


class TestSettings:
    def test_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("AWS_REGION", "eu-west-1")
        monkeypatch.setenv("QBUSINESS_ANONYMOUS_ACCESS_ROLE_ARN", "arn:role")
        monkeypatch.setenv("CREDENTIAL_CACHE_TTL_SECONDS", "60")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.region == "eu-west-1"
        assert settings.anonymous_access_role_arn == "arn:role"
        assert settings.credential_cache_ttl_seconds == 60
        assert settings.log_level == "DEBUG"

    def test_from_env_defaults(self, monkeypatch) -> None:
        for name in ("AWS_REGION", "AWS_DEFAULT_REGION", "QBUSINESS_ANONYMOUS_ACCESS_ROLE_ARN", "SESSION_TABLE_NAME"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.region == "us-east-1"
        assert settings.anonymous_access_role_arn is None
        assert settings.session_table_name == "UserSession"

    def test_invalid_ttl_is_rejected(self, monkeypatch) -> None:
        monkeypatch.setenv("CREDENTIAL_CACHE_TTL_SECONDS", "0")
        with pytest.raises(ValueError):
            Settings.from_env()


class TestHandleErrors:
    @staticmethod
    def _get(exc: Exception):
        @handle_errors("Failed to read thing", "read_failed")
        async def endpoint(request):
            raise exc

        return TestClient(Starlette(routes=[Route("/thing", endpoint)])).get("/thing")

    def test_invalid_input_is_400(self) -> None:
        response = self._get(RequestValidationError("limit must be greater than zero"))
        assert response.status_code == 400
        assert response.json() == {"error": "invalid_request", "message": "limit must be greater than zero"}

    def test_unknown_session_is_404(self) -> None:
        response = self._get(NotFoundError("Session not found"))
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_other_value_errors_are_500(self) -> None:
        response = self._get(UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"))
        assert response.status_code == 500
        assert response.json()["error"] == "read_failed"
        assert response.json()["message"].startswith("Failed to read thing: ")
        assert response.headers["access-control-allow-origin"] == "*"
