"""
Unit tests for gate configuration and error rendering.
"""

import pytest

from shared.config import GateConfig, get_config
from shared.errors import AccountLockedError, AuthenticationError, BackendUnavailable, RateLimitError
from shared.test_helpers import TestEnvironment


class TestGateConfig:
    """Test cases for GateConfig."""

    def test_defaults(self):
        config = GateConfig(_env_file=None)
        assert config.strict_limit == 5
        assert config.lockout_max_attempts == 5
        assert config.lockout_duration_seconds == 7200
        assert config.backend_timeout_seconds == 0.25
        assert config.strict_path_prefixes == ["/api/v1/auth/"]

    def test_environment_overrides(self, monkeypatch):
        for name, value in TestEnvironment.get_mock_config().items():
            monkeypatch.setenv(name, value)
        monkeypatch.setenv("GATE_CACHE_TTL_BY_ROUTE_CLASS", '{"items": 60}')

        config = get_config("gate", 8000)
        assert config.service_name == "gate"
        assert config.redis_enabled is False
        assert config.strict_window_seconds == 60
        assert config.cache_ttl_by_route_class == {"items": 60}

    def test_invalid_limit_rejected(self):
        with pytest.raises(ValueError):
            GateConfig(_env_file=None, strict_limit=0)


class TestGateErrors:
    """Test cases for error responses."""

    def test_locked_error_renders_as_authentication_error(self):
        locked = AccountLockedError("alice", locked_until=1000.0, retry_after=60.0)
        assert locked.status_code == 401
        assert locked.details["locked_until"] == 1000.0
        assert locked.to_response("r").model_dump() == AuthenticationError().to_response("r").model_dump()

    def test_rate_limit_error_details(self):
        error = RateLimitError(12.5, details={"policy": "strict"})
        assert error.status_code == 429
        assert error.details == {"retry_after": 12.5, "policy": "strict"}

    def test_backend_unavailable_message(self):
        error = BackendUnavailable("redis", "get timed out")
        assert error.message == "redis: get timed out"
        assert error.code == "BACKEND_UNAVAILABLE"
