from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple, Union

from coursegate.logging import email_fingerprint, get_logger, session_fingerprint
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
from coursegate.service.security import (
    DEFAULT_PASSWORD_COST,
    hash_password_async,
    is_valid_uuid,
    verify_password_async,
)
from coursegate.service.session_cache import (
    CUSTOMER_SESSION_PREFIX,
    STAFF_SESSION_PREFIX,
    SessionCache,
)
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import (
    CUSTOMER_TRACK,
    STAFF_ROLES,
    STAFF_TRACK,
    Customer,
    OAuthIdentity,
    Session,
    Staff,
    normalize_email,
)

logger = get_logger(__name__)

Principal = Union[Customer, Staff]


class AuthStore(Protocol):
    async def create_customer(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        requires_password_reset: bool = False,
    ) -> Customer: ...

    async def get_customer(self, customer_id: str) -> Optional[Customer]: ...

    async def get_customer_by_email(self, email: str) -> Optional[Customer]: ...

    async def update_customer_password(self, customer_id: str, password_hash: str) -> None: ...

    async def update_customer_email(self, customer_id: str, email: str) -> None: ...

    async def set_customer_requires_password_reset(
        self, customer_id: str, required: bool = True
    ) -> None: ...

    async def create_staff(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        name: Optional[str] = None,
        role: str = "instructor",
        is_active: bool = True,
    ) -> Staff: ...

    async def get_staff(self, staff_id: str) -> Optional[Staff]: ...

    async def get_staff_by_email(self, email: str) -> Optional[Staff]: ...

    async def update_staff_password(self, staff_id: str, password_hash: str) -> None: ...

    async def set_staff_active(self, staff_id: str, active: bool) -> bool: ...

    async def create_session(self, track: str, principal_id: str) -> Session: ...

    async def find_active_session(
        self, track: str, session_id: str, max_age_days: int
    ) -> Optional[Tuple[Session, Principal]]: ...

    async def revoke_session(self, track: str, session_id: str) -> bool: ...

    async def revoke_all_sessions(self, track: str, principal_id: str) -> int: ...

    async def find_or_create_oauth_customer(
        self, identity: OAuthIdentity
    ) -> Tuple[Customer, bool]: ...


class PrincipalTrack:
    """What the generic gateway needs to know about one kind of principal.

    Subclasses bind the store accessors for their table and supply the
    extra gate checks that differ between customers and staff.
    """

    name: str = ""
    cache_prefix: str = ""
    reset_namespace: str = ""

    async def get_by_email(self, store: AuthStore, email: str) -> Optional[Principal]:
        raise NotImplementedError

    async def get_by_id(self, store: AuthStore, principal_id: str) -> Optional[Principal]:
        raise NotImplementedError

    async def set_password_hash(
        self, store: AuthStore, principal_id: str, password_hash: str
    ) -> None:
        raise NotImplementedError

    def check_before_password(self, principal: Principal) -> None:
        """Gate evaluated before the password is verified."""

    def check_after_password(self, principal: Principal) -> None:
        """Gate evaluated once the password is known to be correct."""

    def allows_session(self, principal: Principal) -> bool:
        """Re-checked whenever a session is resolved from the store."""
        return True


class CustomerTrack(PrincipalTrack):
    name = CUSTOMER_TRACK
    cache_prefix = CUSTOMER_SESSION_PREFIX
    reset_namespace = "password_reset"

    async def get_by_email(self, store: AuthStore, email: str) -> Optional[Customer]:
        return await store.get_customer_by_email(email)

    async def get_by_id(self, store: AuthStore, principal_id: str) -> Optional[Customer]:
        return await store.get_customer(principal_id)

    async def set_password_hash(
        self, store: AuthStore, principal_id: str, password_hash: str
    ) -> None:
        await store.update_customer_password(principal_id, password_hash)

    def check_before_password(self, principal: Principal) -> None:
        # accounts migrated without a password can only get in through a reset
        if principal.password_hash is None and principal.requires_password_reset:
            raise PasswordResetRequiredError()

    def check_after_password(self, principal: Principal) -> None:
        if principal.requires_password_reset:
            raise PasswordResetRequiredError()


class StaffTrack(PrincipalTrack):
    name = STAFF_TRACK
    cache_prefix = STAFF_SESSION_PREFIX
    reset_namespace = "admin:password_reset"

    async def get_by_email(self, store: AuthStore, email: str) -> Optional[Staff]:
        return await store.get_staff_by_email(email)

    async def get_by_id(self, store: AuthStore, principal_id: str) -> Optional[Staff]:
        return await store.get_staff(principal_id)

    async def set_password_hash(
        self, store: AuthStore, principal_id: str, password_hash: str
    ) -> None:
        await store.update_staff_password(principal_id, password_hash)

    def check_before_password(self, principal: Principal) -> None:
        if not principal.is_active:
            raise AdminAccountInactiveError()

    def allows_session(self, principal: Principal) -> bool:
        return bool(principal.is_active)


@dataclass
class AuthResult:
    principal: Principal
    session: Session


class SessionGateway:
    """Login, logout and session resolution for one principal track.

    Ordering rules between the cache and the store:

    * ``logout`` deletes the cache entry before revoking the store row, so
      a reader never sees a cached session whose row is already revoked.
    * cascades (password change, reset, email change, deactivation) revoke
      in the store first and then drop every cached entry of the principal.
    """

    def __init__(
        self,
        track: PrincipalTrack,
        store: AuthStore,
        session_cache: SessionCache,
        *,
        session_max_age_days: int = 30,
        password_hash_cost: int = DEFAULT_PASSWORD_COST,
    ) -> None:
        self.track = track
        self.store = store
        self.session_cache = session_cache
        self.session_max_age_days = session_max_age_days
        self.password_hash_cost = password_hash_cost

    async def hash_password(self, password: str) -> str:
        return await hash_password_async(password, self.password_hash_cost)

    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        return await self.track.get_by_id(self.store, principal_id)

    async def get_principal_by_email(self, email: str) -> Optional[Principal]:
        return await self.track.get_by_email(self.store, email)

    async def start_session(self, principal: Principal) -> Session:
        session = await self.store.create_session(self.track.name, principal.id)
        logger.info(
            "session_created",
            track=self.track.name,
            principal_id=principal.id,
            session_fingerprint=session_fingerprint(session.id),
        )
        return session

    async def login(self, email: str, password: str) -> AuthResult:
        principal = await self.track.get_by_email(self.store, email)
        if principal is None:
            logger.info(
                "login_failed",
                track=self.track.name,
                reason="unknown_email",
                email_hash=email_fingerprint(email),
            )
            raise InvalidCredentialsError()

        self.track.check_before_password(principal)
        if principal.password_hash is None:
            raise InvalidCredentialsError()
        if not await verify_password_async(password, principal.password_hash):
            logger.info(
                "login_failed",
                track=self.track.name,
                reason="bad_password",
                principal_id=principal.id,
            )
            raise InvalidCredentialsError()
        self.track.check_after_password(principal)

        session = await self.start_session(principal)
        return AuthResult(principal=principal, session=session)

    async def logout(self, session_id: str) -> None:
        if not is_valid_uuid(session_id):
            return
        await self.session_cache.invalidate(session_id)
        revoked = await self.store.revoke_session(self.track.name, session_id)
        logger.info(
            "session_logout",
            track=self.track.name,
            session_fingerprint=session_fingerprint(session_id),
            revoked=revoked,
        )

    async def validate_session(self, session_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Resolve ``session_id`` to the principal's public view.

        A cache hit is trusted without touching the store. On a miss the
        joined store lookup decides; a found session is written back to the
        cache. Returns None for anything that does not resolve, without
        saying why.
        """
        if not session_id or not is_valid_uuid(session_id):
            return None

        cached = await self.session_cache.get(session_id)
        if cached is not None:
            return cached.principal

        found = await self.store.find_active_session(
            self.track.name, session_id, self.session_max_age_days
        )
        if found is None:
            return None
        session, principal = found

        if not self.track.allows_session(principal):
            # deactivation does not sweep sessions; they die here on next use
            await self.store.revoke_session(self.track.name, session.id)
            logger.info(
                "session_revoked_inactive_principal",
                track=self.track.name,
                principal_id=principal.id,
                session_fingerprint=session_fingerprint(session.id),
            )
            return None

        view = principal.public_view()
        await self.session_cache.set(session.id, principal.id, view)
        return view

    async def revoke_all_sessions(self, principal_id: str) -> int:
        revoked = await self.store.revoke_all_sessions(self.track.name, principal_id)
        await self.session_cache.invalidate_all_for_principal(principal_id)
        logger.info(
            "sessions_revoked_all",
            track=self.track.name,
            principal_id=principal_id,
            revoked=revoked,
        )
        return revoked

    async def change_password(
        self, principal_id: str, current_password: str, new_password: str
    ) -> None:
        principal = await self.track.get_by_id(self.store, principal_id)
        if principal is None or principal.password_hash is None:
            raise AccountNotFoundError()
        if not await verify_password_async(current_password, principal.password_hash):
            raise InvalidCredentialsError("current password is incorrect")
        if current_password == new_password:
            raise PasswordSameAsOldError()

        await self.track.set_password_hash(
            self.store, principal_id, await self.hash_password(new_password)
        )
        logger.info("password_changed", track=self.track.name, principal_id=principal_id)
        await self.revoke_all_sessions(principal_id)


class CustomerAuthService(SessionGateway):
    """Customer track: self-service signup and OAuth-linked accounts."""

    def __init__(
        self,
        store: AuthStore,
        session_cache: SessionCache,
        *,
        session_max_age_days: int = 30,
        password_hash_cost: int = DEFAULT_PASSWORD_COST,
    ) -> None:
        super().__init__(
            CustomerTrack(),
            store,
            session_cache,
            session_max_age_days=session_max_age_days,
            password_hash_cost=password_hash_cost,
        )

    async def signup(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AuthResult:
        # any existing row blocks signup, even one without a password
        if await self.store.get_customer_by_email(email) is not None:
            raise EmailAlreadyExistsError()
        password_hash = await self.hash_password(password)
        try:
            customer = await self.store.create_customer(
                email, password_hash, first_name=first_name, last_name=last_name
            )
        except ConstraintViolation as exc:
            raise EmailAlreadyExistsError() from exc
        logger.info("customer_signed_up", customer_id=customer.id)
        session = await self.start_session(customer)
        return AuthResult(principal=customer, session=session)

    async def login_oauth_identity(self, identity: OAuthIdentity) -> Tuple[AuthResult, bool]:
        customer, is_new = await self.store.find_or_create_oauth_customer(identity)
        session = await self.start_session(customer)
        return AuthResult(principal=customer, session=session), is_new

    async def update_customer_email(self, customer_id: str, email: str) -> Customer:
        """Admin action: change a customer's login email and force re-login."""
        customer = await self.store.get_customer(customer_id)
        if customer is None:
            raise AccountNotFoundError()
        existing = await self.store.get_customer_by_email(email)
        if existing is not None and existing.id != customer_id:
            raise EmailAlreadyExistsError()
        try:
            await self.store.update_customer_email(customer_id, email)
        except ConstraintViolation as exc:
            raise EmailAlreadyExistsError() from exc
        await self.revoke_all_sessions(customer_id)
        customer.email = normalize_email(email)
        return customer

    async def require_password_reset(self, customer_id: str) -> int:
        """Admin action: block password login until the customer resets.

        Live sessions end immediately; the flag clears on the next
        successful password update.
        """
        customer = await self.store.get_customer(customer_id)
        if customer is None:
            raise AccountNotFoundError()
        await self.store.set_customer_requires_password_reset(customer_id, True)
        revoked = await self.revoke_all_sessions(customer_id)
        logger.info("customer_password_reset_required", customer_id=customer_id)
        return revoked


class StaffAuthService(SessionGateway):
    """Staff track: admin-provisioned accounts with an active flag."""

    def __init__(
        self,
        store: AuthStore,
        session_cache: SessionCache,
        *,
        session_max_age_days: int = 30,
        password_hash_cost: int = DEFAULT_PASSWORD_COST,
    ) -> None:
        super().__init__(
            StaffTrack(),
            store,
            session_cache,
            session_max_age_days=session_max_age_days,
            password_hash_cost=password_hash_cost,
        )

    async def create_staff(
        self,
        email: str,
        password: Optional[str],
        *,
        name: Optional[str] = None,
        role: str = "instructor",
    ) -> Staff:
        if role not in STAFF_ROLES:
            raise ValidationError(f"role must be one of {', '.join(STAFF_ROLES)}")
        password_hash = await self.hash_password(password) if password else None
        try:
            staff = await self.store.create_staff(
                email, password_hash, name=name, role=role
            )
        except ConstraintViolation as exc:
            raise EmailAlreadyExistsError() from exc
        logger.info("staff_created", staff_id=staff.id, role=role)
        return staff

    async def deactivate_staff(self, staff_id: str, acting_staff_id: str) -> None:
        if staff_id == acting_staff_id:
            raise CannotDeactivateSelfError()
        if not await self.store.set_staff_active(staff_id, False):
            raise AccountNotFoundError()
        logger.info("staff_deactivated", staff_id=staff_id, by=acting_staff_id)
        await self.revoke_all_sessions(staff_id)

    async def activate_staff(self, staff_id: str) -> None:
        if not await self.store.set_staff_active(staff_id, True):
            raise AccountNotFoundError()
        logger.info("staff_activated", staff_id=staff_id)
