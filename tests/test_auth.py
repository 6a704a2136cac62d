import pytest

from database.models import UserRole
from services.auth import create_access_token, decode_access_token
from services.exceptions import AuthenticationException


class TestAccessTokens:
    def test_round_trip(self, test_config):
        token = create_access_token(12, UserRole.COURIER, test_config)
        payload = decode_access_token(token, test_config)
        assert (payload.user_id, payload.role) == (12, UserRole.COURIER)

    def test_expired(self, test_config):
        token = create_access_token(12, UserRole.COURIER, test_config, expires_hours=-1)
        with pytest.raises(AuthenticationException) as exc:
            decode_access_token(token, test_config)
        assert exc.value.message == "Token expired"
        assert exc.value.status_code == 401

    def test_foreign_signature(self, test_config):
        other = test_config.model_copy(update={"JWT_SECRET": "someone-else-0123456789abcdef0123456789"})
        token = create_access_token(12, UserRole.ADMIN, other)
        with pytest.raises(AuthenticationException) as exc:
            decode_access_token(token, test_config)
        assert exc.value.message == "Invalid token"
