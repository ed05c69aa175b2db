"""Service-level tests for login, two-factor flows and password management."""

import pytest

from conftest import ADMIN_PASSWORD, ADMIN_USERNAME
from vitrine.service.errors import (
    ChallengeConsumedError,
    ChallengeNotFoundError,
    CooldownActiveError,
    EmailUnavailableError,
    InvalidCodeError,
    InvalidCredentialsError,
    RateLimitedError,
    UnauthenticatedError,
    ValidationError,
)
from vitrine.service.hashing import Argon2PasswordHasher
from vitrine.storage.errors import ConstraintViolation

ADDRESS = "203.0.113.5"


@pytest.fixture
def auth(runtime, email):
    return runtime.auth


@pytest.fixture
def two_factor_admin(runtime, admin):
    return runtime.store.set_admin_two_factor(
        admin.id, enabled=True, email="owner@example.com", verified=True
    )


class TestLogin:
    async def test_password_login_issues_session(self, auth, admin, runtime, clock):
        result = await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        assert result.requires_two_factor is False
        assert result.tokens.claims.user_id == admin.id
        assert runtime.store.get_admin_user(admin.id).last_login_at == clock()

    async def test_failures_are_indistinguishable(self, auth, admin, runtime):
        runtime.store.create_admin_user("retired", runtime.hasher.hash(ADMIN_PASSWORD), is_active=False)
        messages = []
        for username, password in [
            (ADMIN_USERNAME, "wrong password"),
            ("nobody", ADMIN_PASSWORD),
            ("retired", ADMIN_PASSWORD),
        ]:
            with pytest.raises(InvalidCredentialsError) as exc_info:
                await auth.login(username, password, address=ADDRESS)
            messages.append((exc_info.value.message, exc_info.value.status_code))
        assert len(set(messages)) == 1

    async def test_eleventh_attempt_is_limited(self, auth, admin):
        for _ in range(10):
            with pytest.raises(InvalidCredentialsError):
                await auth.login(ADMIN_USERNAME, "wrong password", address=ADDRESS)
        with pytest.raises(RateLimitedError) as exc_info:
            await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        assert exc_info.value.retry_after == 900

    async def test_limit_expires_with_window(self, auth, admin, clock):
        for _ in range(10):
            with pytest.raises(InvalidCredentialsError):
                await auth.login(ADMIN_USERNAME, "wrong password", address=ADDRESS)
        clock.advance(minutes=15)
        result = await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        assert result.tokens is not None

    async def test_success_does_not_reset_failures(self, auth, admin):
        for _ in range(9):
            with pytest.raises(InvalidCredentialsError):
                await auth.login(ADMIN_USERNAME, "wrong password", address=ADDRESS)
        await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        with pytest.raises(InvalidCredentialsError):
            await auth.login(ADMIN_USERNAME, "wrong password", address=ADDRESS)
        with pytest.raises(RateLimitedError):
            await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)

    async def test_other_addresses_unaffected(self, auth, admin):
        for _ in range(10):
            with pytest.raises(InvalidCredentialsError):
                await auth.login(ADMIN_USERNAME, "wrong password", address=ADDRESS)
        result = await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address="198.51.100.7")
        assert result.tokens is not None

    async def test_outdated_hash_is_upgraded(self, auth, admin, runtime):
        legacy = Argon2PasswordHasher(time_cost=2, memory_cost=1024, parallelism=1)
        old_hash = legacy.hash(ADMIN_PASSWORD)
        runtime.store.update_admin_password(admin.id, old_hash)
        await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        new_hash = runtime.store.get_admin_user(admin.id).password_hash
        assert new_hash != old_hash
        assert runtime.hasher.needs_rehash(new_hash) is False


class TestTwoFactorLogin:
    async def test_challenge_then_session(self, auth, two_factor_admin, email):
        result = await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        assert result.requires_two_factor is True
        assert result.tokens is None
        assert email.sent[-1]["to"] == "owner@example.com"
        assert email.sent[-1]["purpose"] == "login"

        verified = await auth.verify_login_challenge(result.challenge.id, email.last_code())
        assert verified.tokens.claims.user_id == two_factor_admin.id

    async def test_wrong_code_keeps_challenge_open(self, auth, two_factor_admin, email):
        result = await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        wrong = "000000" if email.last_code() != "000000" else "111111"
        with pytest.raises(InvalidCodeError):
            await auth.verify_login_challenge(result.challenge.id, wrong)
        verified = await auth.verify_login_challenge(result.challenge.id, email.last_code())
        assert verified.tokens is not None

    async def test_code_works_once(self, auth, two_factor_admin, email):
        result = await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        code = email.last_code()
        await auth.verify_login_challenge(result.challenge.id, code)
        with pytest.raises(ChallengeConsumedError):
            await auth.verify_login_challenge(result.challenge.id, code)

    async def test_undeliverable_code_cancels_challenge(self, auth, two_factor_admin, email, runtime):
        email.fail = True
        with pytest.raises(EmailUnavailableError):
            await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        challenge = runtime.store.get_latest_two_factor_token(two_factor_admin.id, "login")
        assert challenge.consumed_at is not None

    async def test_missing_two_factor_email(self, auth, admin, runtime):
        runtime.store.set_admin_two_factor(admin.id, enabled=True, email=None, verified=False)
        with pytest.raises(EmailUnavailableError):
            await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)

    async def test_second_login_inside_cooldown(self, auth, two_factor_admin, clock):
        await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        clock.advance(seconds=10)
        with pytest.raises(CooldownActiveError) as exc_info:
            await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        assert exc_info.value.retry_after == 50

    async def test_login_again_after_verified_challenge(self, auth, two_factor_admin, email, clock):
        first = await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        await auth.verify_login_challenge(first.challenge.id, email.last_code())
        clock.advance(seconds=5)
        second = await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        assert second.requires_two_factor is True
        assert second.challenge.id != first.challenge.id
        verified = await auth.verify_login_challenge(second.challenge.id, email.last_code())
        assert verified.tokens.claims.user_id == two_factor_admin.id

    async def test_resend_delivers_fresh_code(self, auth, two_factor_admin, email, clock):
        result = await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        clock.advance(seconds=61)
        resent = await auth.resend_login_challenge(result.challenge.id)
        assert resent.id == result.challenge.id
        assert len([m for m in email.sent if m["kind"] == "code"]) == 2
        verified = await auth.verify_login_challenge(resent.id, email.last_code())
        assert verified.tokens is not None


class TestChangePassword:
    @pytest.mark.parametrize(
        "current, new, confirm, field",
        [
            ("", "new passphrase", "new passphrase", None),
            (ADMIN_PASSWORD, "new passphrase", "other passphrase", "confirmPassword"),
            (ADMIN_PASSWORD, "short", "short", "newPassword"),
            ("wrong password", "new passphrase", "new passphrase", "currentPassword"),
            (ADMIN_PASSWORD, ADMIN_PASSWORD, ADMIN_PASSWORD, "newPassword"),
        ],
    )
    async def test_rejections(self, auth, admin, current, new, confirm, field):
        with pytest.raises(ValidationError) as exc_info:
            await auth.change_password(admin.id, current, new, confirm)
        assert exc_info.value.detail.get("field") == field

    async def test_success_signs_out_other_sessions(self, auth, admin, runtime):
        current = await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        other = await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address="198.51.100.7")
        await auth.change_password(
            admin.id,
            ADMIN_PASSWORD,
            "brand new passphrase",
            "brand new passphrase",
            keep_token=current.tokens.refresh_token,
        )
        runtime.tokens.refresh(current.tokens.refresh_token)
        with pytest.raises(UnauthenticatedError):
            runtime.tokens.refresh(other.tokens.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await auth.login(ADMIN_USERNAME, ADMIN_PASSWORD, address=ADDRESS)
        result = await auth.login(ADMIN_USERNAME, "brand new passphrase", address=ADDRESS)
        assert result.tokens is not None

    async def test_notice_sent_when_two_factor_on(self, auth, two_factor_admin, email):
        await auth.change_password(
            two_factor_admin.id, ADMIN_PASSWORD, "brand new passphrase", "brand new passphrase"
        )
        assert email.sent[-1]["kind"] == "password_changed"

    async def test_failed_notice_does_not_fail_change(self, auth, two_factor_admin, email):
        email.fail = True
        await auth.change_password(
            two_factor_admin.id, ADMIN_PASSWORD, "brand new passphrase", "brand new passphrase"
        )


class TestTwoFactorSettings:
    async def test_setup_round_trip(self, auth, admin, email):
        issued = await auth.send_two_factor_setup(admin.id, "owner@example.com")
        assert email.sent[-1]["purpose"] == "setup"
        user = await auth.confirm_two_factor_setup(admin.id, issued.id, email.last_code("setup"))
        assert user.two_factor_enabled is True
        assert user.two_factor_verified is True
        assert user.two_factor_email == "owner@example.com"
        assert email.sent[-1]["kind"] == "two_factor_enabled"

    async def test_setup_rejects_bad_address(self, auth, admin):
        with pytest.raises(ValidationError):
            await auth.send_two_factor_setup(admin.id, "not-an-address")

    async def test_setup_code_bound_to_user(self, auth, admin, runtime, email):
        other = auth.create_admin("clerk", "clerk passphrase")
        issued = await auth.send_two_factor_setup(admin.id, "owner@example.com")
        with pytest.raises(ChallengeNotFoundError) as exc_info:
            await auth.confirm_two_factor_setup(other.id, issued.id, email.last_code("setup"))
        assert exc_info.value.detail["reason"] == "not_found"
        assert runtime.store.get_admin_user(other.id).two_factor_enabled is False

    async def test_setup_resend_cooldown(self, auth, admin):
        await auth.send_two_factor_setup(admin.id, "owner@example.com")
        with pytest.raises(CooldownActiveError):
            await auth.send_two_factor_setup(admin.id, "owner@example.com")

    async def test_disable_requires_password(self, auth, two_factor_admin):
        with pytest.raises(ValidationError):
            await auth.disable_two_factor(two_factor_admin.id, "wrong password")
        user = await auth.disable_two_factor(two_factor_admin.id, ADMIN_PASSWORD)
        assert user.two_factor_enabled is False
        assert user.two_factor_email is None

    def test_settings_for_inactive_user(self, auth, admin, runtime):
        runtime.store.set_admin_active(admin.id, False)
        with pytest.raises(UnauthenticatedError):
            auth.get_two_factor_settings(admin.id)


class TestProvisioning:
    def test_create_admin_validates(self, auth):
        with pytest.raises(ValidationError):
            auth.create_admin("  ", "long enough passphrase")
        with pytest.raises(ValidationError):
            auth.create_admin("clerk", "short")

    def test_duplicate_username(self, auth, admin):
        with pytest.raises(ConstraintViolation):
            auth.create_admin(ADMIN_USERNAME, "another passphrase")

    def test_seed_only_when_empty(self, auth, runtime):
        assert auth.ensure_seed_admin() is None
        runtime.settings.admin_seed_password = "seeded passphrase"
        seeded = auth.ensure_seed_admin()
        assert seeded.username == "admin"
        assert auth.ensure_seed_admin() is None
        assert runtime.store.count_admin_users() == 1
