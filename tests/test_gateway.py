"""Unit tests for the session gateway.

Tests for:
- Customer signup and login precedence
- Staff login and the active flag
- Session validation through the cache and the store
- Logout and revoke-all cascades
- Password change and admin account actions
"""

import pytest

from coursegate.logging import session_fingerprint
from coursegate.service import gateway as gateway_module
from coursegate.service.errors import (
    AccountNotFoundError,
    AdminAccountInactiveError,
    CannotDeactivateSelfError,
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    PasswordResetRequiredError,
    PasswordSameAsOldError,
    ValidationError,
)
from coursegate.service.security import hash_password

TEST_HASH_COST = 4
PASSWORD = "Str0ng!Passw0rd12"


@pytest.fixture
def customer_auth(runtime):
    return runtime.customer_auth


@pytest.fixture
def staff_auth(runtime):
    return runtime.staff_auth


class RecordingLogger:
    def __init__(self):
        self.events = []

    def _record(self, event, **fields):
        self.events.append((event, fields))

    debug = info = warning = error = _record


async def _seed_staff(store, email="ops@example.com", *, role="admin", active=True):
    return await store.create_staff(
        email,
        hash_password(PASSWORD, TEST_HASH_COST),
        name="Ops",
        role=role,
        is_active=active,
    )


class TestCustomerSignupAndLogin:
    """Signup, then login with right and wrong passwords."""

    @pytest.mark.asyncio
    async def test_signup_login_wrong_password(self, customer_auth):
        """Signup issues a session, login issues another, bad password fails."""
        signed_up = await customer_auth.signup("a@x.com", PASSWORD)
        assert signed_up.session.principal_id == signed_up.principal.id

        logged_in = await customer_auth.login("a@x.com", PASSWORD)
        assert logged_in.principal.id == signed_up.principal.id
        assert logged_in.session.id != signed_up.session.id

        with pytest.raises(InvalidCredentialsError):
            await customer_auth.login("a@x.com", "wrong-password-1")

    @pytest.mark.asyncio
    async def test_signup_duplicate_email(self, customer_auth):
        """A second signup for the same address conflicts."""
        await customer_auth.signup("a@x.com", PASSWORD)
        with pytest.raises(EmailAlreadyExistsError):
            await customer_auth.signup("A@X.com", PASSWORD)

    @pytest.mark.asyncio
    async def test_signup_blocked_by_passwordless_account(self, customer_auth, store):
        """An OAuth-only account still owns its email."""
        await store.create_customer("a@x.com", None)
        with pytest.raises(EmailAlreadyExistsError):
            await customer_auth.signup("a@x.com", PASSWORD)

    @pytest.mark.asyncio
    async def test_unknown_email_is_invalid_credentials(self, customer_auth):
        """Unknown and wrong-password logins look the same."""
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await customer_auth.login("nobody@x.com", PASSWORD)
        assert exc_info.value.error_code == "INVALID_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_passwordless_with_reset_flag(self, customer_auth, store):
        """Migrated accounts without a password are told to reset."""
        await store.create_customer("m@x.com", None, requires_password_reset=True)
        with pytest.raises(PasswordResetRequiredError):
            await customer_auth.login("m@x.com", PASSWORD)

    @pytest.mark.asyncio
    async def test_passwordless_without_flag(self, customer_auth, store):
        """OAuth-only accounts cannot log in with a password."""
        await store.create_customer("o@x.com", None)
        with pytest.raises(InvalidCredentialsError):
            await customer_auth.login("o@x.com", PASSWORD)

    @pytest.mark.asyncio
    async def test_reset_flag_checked_after_password(self, customer_auth, store):
        """The reset flag is only revealed to callers who know the password."""
        await store.create_customer(
            "f@x.com",
            hash_password(PASSWORD, TEST_HASH_COST),
            requires_password_reset=True,
        )
        with pytest.raises(InvalidCredentialsError):
            await customer_auth.login("f@x.com", "wrong-password-1")
        with pytest.raises(PasswordResetRequiredError):
            await customer_auth.login("f@x.com", PASSWORD)


class TestStaffLogin:
    """Staff login and the active flag."""

    @pytest.mark.asyncio
    async def test_active_staff_logs_in(self, staff_auth, store):
        """Correct credentials give a staff session."""
        staff = await _seed_staff(store)
        result = await staff_auth.login("ops@example.com", PASSWORD)
        assert result.principal.id == staff.id
        assert result.session.id in store.sessions["staff"]

    @pytest.mark.asyncio
    async def test_inactive_staff_rejected(self, staff_auth, store):
        """Deactivated staff are rejected before the password is checked."""
        await _seed_staff(store, active=False)
        with pytest.raises(AdminAccountInactiveError):
            await staff_auth.login("ops@example.com", "wrong-password-1")

    @pytest.mark.asyncio
    async def test_customer_credentials_do_not_work_for_staff(
        self, customer_auth, staff_auth
    ):
        """The two tracks have separate principals."""
        await customer_auth.signup("a@x.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await staff_auth.login("a@x.com", PASSWORD)


class TestValidateSession:
    """Session resolution through cache and store."""

    @pytest.mark.asyncio
    async def test_malformed_id_returns_none(self, customer_auth):
        """Ids that are not UUIDs never reach the cache or store."""
        assert await customer_auth.validate_session("not-a-uuid") is None
        assert await customer_auth.validate_session(None) is None
        assert await customer_auth.validate_session("") is None

    @pytest.mark.asyncio
    async def test_store_hit_is_written_back(self, customer_auth):
        """A store lookup populates the cache."""
        result = await customer_auth.signup("a@x.com", PASSWORD)
        session_id = result.session.id
        assert await customer_auth.session_cache.get(session_id) is None

        principal = await customer_auth.validate_session(session_id)

        assert principal["email"] == "a@x.com"
        assert "password_hash" not in principal
        cached = await customer_auth.session_cache.get(session_id)
        assert cached.principal_id == result.principal.id

    @pytest.mark.asyncio
    async def test_cache_hit_skips_store(self, customer_auth, store):
        """A cached entry is trusted without a store lookup."""
        result = await customer_auth.signup("a@x.com", PASSWORD)
        await customer_auth.validate_session(result.session.id)
        # store row gone; only the cache can answer now
        store.sessions["customer"].clear()

        principal = await customer_auth.validate_session(result.session.id)
        assert principal["id"] == result.principal.id

    @pytest.mark.asyncio
    async def test_unknown_session_returns_none(self, customer_auth):
        """A well-formed but unknown id does not resolve."""
        assert (
            await customer_auth.validate_session("0190a0b2-7c3d-7e4f-8a1b-2c3d4e5f6a70")
            is None
        )

    @pytest.mark.asyncio
    async def test_customer_session_invalid_on_staff_track(
        self, customer_auth, staff_auth
    ):
        """A customer session id is unknown to the staff gateway."""
        result = await customer_auth.signup("a@x.com", PASSWORD)
        assert await staff_auth.validate_session(result.session.id) is None

    @pytest.mark.asyncio
    async def test_inactive_staff_session_revoked_on_use(self, staff_auth, store):
        """An uncached session of a deactivated staff member is revoked."""
        staff = await _seed_staff(store)
        result = await staff_auth.login("ops@example.com", PASSWORD)
        await store.set_staff_active(staff.id, False)

        assert await staff_auth.validate_session(result.session.id) is None
        assert store.sessions["staff"][result.session.id].revoked_at is not None
        assert await staff_auth.session_cache.get(result.session.id) is None


class TestLogoutAndCascades:
    """Logout and revoke-all ordering."""

    @pytest.mark.asyncio
    async def test_logout_invalidates_cache_and_store(self, customer_auth, store):
        """After logout the session no longer resolves."""
        result = await customer_auth.signup("a@x.com", PASSWORD)
        await customer_auth.validate_session(result.session.id)

        await customer_auth.logout(result.session.id)

        assert await customer_auth.session_cache.get(result.session.id) is None
        assert store.sessions["customer"][result.session.id].revoked_at is not None
        assert await customer_auth.validate_session(result.session.id) is None

    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, customer_auth):
        """Logging out twice or with garbage is harmless."""
        result = await customer_auth.signup("a@x.com", PASSWORD)
        await customer_auth.logout(result.session.id)
        await customer_auth.logout(result.session.id)
        await customer_auth.logout("garbage")

    @pytest.mark.asyncio
    async def test_revoke_all_kills_cached_sessions(self, customer_auth):
        """Previously cached sessions are gone after revoke-all."""
        first = await customer_auth.signup("a@x.com", PASSWORD)
        second = await customer_auth.login("a@x.com", PASSWORD)
        for session_id in (first.session.id, second.session.id):
            assert await customer_auth.validate_session(session_id) is not None

        revoked = await customer_auth.revoke_all_sessions(first.principal.id)

        assert revoked == 2
        assert await customer_auth.validate_session(first.session.id) is None
        assert await customer_auth.validate_session(second.session.id) is None

    @pytest.mark.asyncio
    async def test_change_password_revokes_cached_sessions(self, customer_auth):
        """A password change ends every session, cached or not."""
        result = await customer_auth.signup("a@x.com", PASSWORD)
        await customer_auth.validate_session(result.session.id)

        await customer_auth.change_password(
            result.principal.id, PASSWORD, "N3w!Passw0rd-long"
        )

        assert await customer_auth.validate_session(result.session.id) is None
        with pytest.raises(InvalidCredentialsError):
            await customer_auth.login("a@x.com", PASSWORD)
        assert (await customer_auth.login("a@x.com", "N3w!Passw0rd-long")).session


class TestChangePassword:
    """Password change validation."""

    @pytest.mark.asyncio
    async def test_wrong_current_password(self, customer_auth):
        """The current password must verify."""
        result = await customer_auth.signup("a@x.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await customer_auth.change_password(
                result.principal.id, "wrong-password-1", "N3w!Passw0rd-long"
            )

    @pytest.mark.asyncio
    async def test_same_password_rejected(self, customer_auth):
        """Reusing the current password is refused and sessions survive."""
        result = await customer_auth.signup("a@x.com", PASSWORD)
        with pytest.raises(PasswordSameAsOldError):
            await customer_auth.change_password(result.principal.id, PASSWORD, PASSWORD)
        assert await customer_auth.validate_session(result.session.id) is not None

    @pytest.mark.asyncio
    async def test_passwordless_account(self, customer_auth, store):
        """Accounts without a password must use a reset instead."""
        customer = await store.create_customer("o@x.com", None)
        with pytest.raises(AccountNotFoundError):
            await customer_auth.change_password(customer.id, "x", "N3w!Passw0rd-long")


class TestAdminActions:
    """Staff provisioning and customer management."""

    @pytest.mark.asyncio
    async def test_create_staff_validates_role(self, staff_auth):
        """Only known roles are accepted."""
        with pytest.raises(ValidationError):
            await staff_auth.create_staff("t@example.com", PASSWORD, role="owner")

    @pytest.mark.asyncio
    async def test_create_staff_duplicate(self, staff_auth):
        """Staff emails are unique."""
        await staff_auth.create_staff("t@example.com", PASSWORD)
        with pytest.raises(EmailAlreadyExistsError):
            await staff_auth.create_staff("t@example.com", PASSWORD)

    @pytest.mark.asyncio
    async def test_create_staff_without_password(self, staff_auth):
        """Staff can be provisioned to set a password through reset."""
        staff = await staff_auth.create_staff("t@example.com", None, role="instructor")
        assert staff.password_hash is None
        with pytest.raises(InvalidCredentialsError):
            await staff_auth.login("t@example.com", PASSWORD)

    @pytest.mark.asyncio
    async def test_deactivate_revokes_sessions(self, staff_auth, store):
        """Deactivation ends the target's sessions immediately."""
        admin = await _seed_staff(store)
        target = await _seed_staff(store, "t@example.com", role="instructor")
        session = (await staff_auth.login("t@example.com", PASSWORD)).session
        await staff_auth.validate_session(session.id)

        await staff_auth.deactivate_staff(target.id, admin.id)

        assert await staff_auth.validate_session(session.id) is None
        with pytest.raises(AdminAccountInactiveError):
            await staff_auth.login("t@example.com", PASSWORD)

        await staff_auth.activate_staff(target.id)
        assert (await staff_auth.login("t@example.com", PASSWORD)).session

    @pytest.mark.asyncio
    async def test_cannot_deactivate_self(self, staff_auth, store):
        """An admin cannot lock themselves out."""
        admin = await _seed_staff(store)
        with pytest.raises(CannotDeactivateSelfError):
            await staff_auth.deactivate_staff(admin.id, admin.id)

    @pytest.mark.asyncio
    async def test_deactivate_unknown_staff(self, staff_auth, store):
        """Unknown ids are reported as missing."""
        admin = await _seed_staff(store)
        with pytest.raises(AccountNotFoundError):
            await staff_auth.deactivate_staff("missing", admin.id)
        with pytest.raises(AccountNotFoundError):
            await staff_auth.activate_staff("missing")

    @pytest.mark.asyncio
    async def test_update_customer_email_revokes_sessions(self, customer_auth):
        """Changing a customer's email forces a new login."""
        result = await customer_auth.signup("a@x.com", PASSWORD)
        await customer_auth.validate_session(result.session.id)

        updated = await customer_auth.update_customer_email(
            result.principal.id, "New@X.com"
        )

        assert updated.email == "new@x.com"
        assert await customer_auth.validate_session(result.session.id) is None
        assert (await customer_auth.login("new@x.com", PASSWORD)).session

    @pytest.mark.asyncio
    async def test_update_customer_email_conflict(self, customer_auth):
        """The new email must be free."""
        first = await customer_auth.signup("a@x.com", PASSWORD)
        await customer_auth.signup("b@x.com", PASSWORD)
        with pytest.raises(EmailAlreadyExistsError):
            await customer_auth.update_customer_email(first.principal.id, "b@x.com")
        with pytest.raises(AccountNotFoundError):
            await customer_auth.update_customer_email("missing", "c@x.com")

    @pytest.mark.asyncio
    async def test_require_password_reset(self, customer_auth, store):
        """The flag is set, sessions end and password login is refused."""
        result = await customer_auth.signup("a@x.com", PASSWORD)
        await customer_auth.validate_session(result.session.id)

        revoked = await customer_auth.require_password_reset(result.principal.id)

        assert revoked == 1
        assert store.customers[result.principal.id].requires_password_reset is True
        assert await customer_auth.validate_session(result.session.id) is None
        with pytest.raises(PasswordResetRequiredError):
            await customer_auth.login("a@x.com", PASSWORD)
        with pytest.raises(AccountNotFoundError):
            await customer_auth.require_password_reset("missing")

class TestSessionIdsStayOutOfLogs:
    """Bearer session ids never reach log lines."""

    @pytest.mark.asyncio
    async def test_lifecycle_logs_only_fingerprints(self, customer_auth, monkeypatch):
        """Creation and logout log a digest of the id, not the id."""
        recorder = RecordingLogger()
        monkeypatch.setattr(gateway_module, "logger", recorder)

        result = await customer_auth.signup("b@x.com", PASSWORD)
        await customer_auth.logout(result.session.id)

        events = {event: fields for event, fields in recorder.events}
        for name in ("session_created", "session_logout"):
            assert events[name]["session_fingerprint"] == session_fingerprint(result.session.id)
        for _, fields in recorder.events:
            assert result.session.id not in map(str, fields.values())
