"""Unit tests for the login gate and request entry points.

Tests for:
- Password hashing and verification
- Login success, failure and account status
- Rate limiting and lockout ordering
- The brute-force scenario end to end
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from hackguard.service.auth import AuthService
from hackguard.service.errors import (
    AuthenticationError,
    ForbiddenError,
    LockedOutError,
    RateLimitedError,
    ValidationError,
)
from hackguard.service.fingerprint import DeviceFingerprinter
from hackguard.service.lockout import LoginAttemptTracker
from hackguard.service.rate_limit import RateLimiter

PASSWORD = "CorrectHorse-Battery-9"
UA = "Mozilla/5.0 (X11; Linux x86_64)"
LANG = "en-US"


@pytest.fixture
def auth_service(store, cache, session_manager, clock):
    return AuthService(
        store,
        session_manager,
        RateLimiter(cache, clock=clock),
        LoginAttemptTracker(cache, max_attempts=5, lock_minutes=15, clock=clock),
        DeviceFingerprinter("fingerprint-secret"),
        login_rate_limit=10,
        login_rate_window_ms=60_000,
    )


@pytest.fixture
def test_user(store, auth_service):
    return store.create_user(
        "participant", "user@example.com", "Test User", auth_service.hash_password(PASSWORD)
    )


async def _login(auth_service, password=PASSWORD, *, email="user@example.com", ip="10.0.0.1"):
    return await auth_service.login(
        email, password, "participant", ip_addr=ip, user_agent=UA, accept_language=LANG
    )


class TestPasswordHashing:
    def test_hash_is_argon2id(self, auth_service):
        digest = auth_service.hash_password(PASSWORD)
        assert digest.startswith("$argon2id$")
        assert PASSWORD not in digest

    def test_verify_password(self, auth_service, test_user):
        assert auth_service.verify_password(test_user, PASSWORD)
        assert not auth_service.verify_password(test_user, "wrong-password")

    def test_verify_password_with_corrupt_hash(self, auth_service, test_user):
        test_user.password_hash = "not-a-hash"
        assert not auth_service.verify_password(test_user, PASSWORD)

    def test_verify_password_without_hash(self, auth_service, test_user):
        test_user.password_hash = None
        assert not auth_service.verify_password(test_user, PASSWORD)


class TestLogin:
    async def test_successful_login_creates_session(self, auth_service, test_user):
        session = await _login(auth_service)

        assert session.identity.user_id == test_user.id
        assert session.partition == "participant"
        assert session.csrf_token
        validation = await auth_service.on_request(session.token, UA, LANG)
        assert validation.valid

    async def test_email_normalized(self, auth_service, test_user):
        session = await _login(auth_service, email="  USER@example.com ")
        assert session.identity.email == "user@example.com"

    async def test_invalid_email_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await _login(auth_service, email="not-an-email")

    async def test_invalid_role_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.login("user@example.com", PASSWORD, "judge")

    async def test_wrong_role_partition_is_unknown_user(self, auth_service, test_user):
        with pytest.raises(AuthenticationError):
            await auth_service.login("user@example.com", PASSWORD, "admin")

    async def test_wrong_password_and_unknown_email_look_identical(
        self, auth_service, test_user
    ):
        with pytest.raises(AuthenticationError) as wrong_password:
            await _login(auth_service, "nope")
        with pytest.raises(AuthenticationError) as unknown_email:
            await _login(auth_service, email="ghost@example.com")
        assert wrong_password.value.message == unknown_email.value.message

    async def test_failure_is_audited(self, auth_service, test_user):
        with patch("hackguard.service.auth.log_security_event") as audit:
            with pytest.raises(AuthenticationError):
                await _login(auth_service, "nope")
        assert audit.call_args[0][0] == "login_failed"
        assert audit.call_args[1]["failures"] == 1

    async def test_success_is_audited(self, auth_service, test_user):
        with patch("hackguard.service.auth.log_security_event") as audit:
            await _login(auth_service)
        assert audit.call_args[0][0] == "login_success"

    async def test_inactive_account_forbidden_without_counting(
        self, auth_service, store, test_user
    ):
        store.set_user_status("participant", "user@example.com", "suspended")
        with pytest.raises(ForbiddenError):
            await _login(auth_service)
        status = await auth_service.lockout.check_login_attempts("user@example.com")
        assert status.remaining_attempts == 5

    async def test_success_clears_failures(self, auth_service, test_user):
        for _ in range(4):
            with pytest.raises(AuthenticationError):
                await _login(auth_service, "nope")
        await _login(auth_service)
        status = await auth_service.lockout.check_login_attempts("user@example.com")
        assert status.remaining_attempts == 5

    async def test_ip_rate_limit(self, auth_service, test_user):
        for i in range(10):
            with pytest.raises(AuthenticationError):
                await _login(auth_service, "nope", email=f"ghost{i}@example.com")
        with pytest.raises(RateLimitedError) as excinfo:
            await _login(auth_service)
        assert excinfo.value.retry_after > 0

    async def test_other_ip_not_rate_limited(self, auth_service, test_user):
        for i in range(10):
            with pytest.raises(AuthenticationError):
                await _login(auth_service, "nope", email=f"ghost{i}@example.com")
        session = await _login(auth_service, ip="10.0.0.2")
        assert session.token


class TestBruteForceScenario:
    async def test_lockout_then_recovery(self, auth_service, test_user, clock):
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await _login(auth_service, "wrong-password")

        # Sixth attempt is refused even with the right password
        with pytest.raises(LockedOutError) as excinfo:
            await _login(auth_service)
        assert excinfo.value.retry_after == 15 * 60

        clock.advance(minutes=10)
        with pytest.raises(LockedOutError):
            await _login(auth_service)

        clock.advance(minutes=5, seconds=1)
        session = await _login(auth_service)
        assert session.token
        status = await auth_service.lockout.check_login_attempts("user@example.com")
        assert status.allowed
        assert status.remaining_attempts == 5

    async def test_locked_attempt_is_audited(self, auth_service, test_user, clock):
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await _login(auth_service, "wrong-password")

        with patch("hackguard.service.auth.log_security_event") as audit:
            with pytest.raises(LockedOutError):
                await _login(auth_service, ip="10.0.0.9")

        audit.assert_called_once()
        assert audit.call_args[0][0] == "suspicious_activity"
        fields = audit.call_args[1]
        assert fields["reason"] == "account_locked"
        assert fields["email"] == "user@example.com"
        assert fields["ip_addr"] == "10.0.0.9"
        assert fields["lock_until"] == (clock.now + timedelta(minutes=15)).isoformat()

    async def test_lockout_is_per_email_not_per_ip(self, auth_service, test_user):
        for i in range(5):
            with pytest.raises(AuthenticationError):
                await _login(auth_service, "wrong-password", ip=f"10.1.0.{i}")
        with pytest.raises(LockedOutError):
            await _login(auth_service, ip="10.9.9.9")


class TestRequestEntryPoints:
    async def test_on_request_uses_fingerprint(self, auth_service, test_user):
        session = await _login(auth_service)
        result = await auth_service.on_request(session.token, "curl/8.0", LANG)
        assert not result.valid

    async def test_logout(self, auth_service, test_user):
        session = await _login(auth_service)
        cookies = await auth_service.logout(session.token)
        assert all(c.clears for c in cookies)
        assert not (await auth_service.on_request(session.token, UA, LANG)).valid

    async def test_logout_everywhere(self, auth_service, test_user):
        first = await _login(auth_service)
        second = await _login(auth_service)
        revoked, cookies = await auth_service.logout_everywhere(first)
        assert revoked == 2
        assert all(c.clears for c in cookies)
        assert not (await auth_service.on_request(second.token, UA, LANG)).valid
