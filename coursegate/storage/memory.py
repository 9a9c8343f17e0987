from __future__ import annotations

import dataclasses
import threading
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple, Union

from coursegate.logging import get_logger
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import (
    CUSTOMER_TRACK,
    STAFF_TRACK,
    TRACKS,
    Customer,
    OAuthIdentity,
    Session,
    Staff,
    generate_uuid7,
    normalize_email,
    utcnow,
)

Principal = Union[Customer, Staff]


class MemoryStore:
    """In-process store with the same contract as ``PostgresStore``.

    Used by the test suite and by local development (``USE_MEMORY_STORE``).
    A single re-entrant lock stands in for database transactions; returned
    records are copies so callers cannot mutate stored state by accident.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.customers: Dict[str, Customer] = {}
        self.staff: Dict[str, Staff] = {}
        self.sessions: Dict[str, Dict[str, Session]] = {track: {} for track in TRACKS}
        # (provider, provider_account_id) -> customer id
        self.oauth_accounts: Dict[Tuple[str, str], str] = {}
        self._data_lock = threading.RLock()

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def verify_connection(self) -> None:
        return None

    def _principals(self, track: str) -> Dict[str, Principal]:
        if track == CUSTOMER_TRACK:
            return self.customers  # type: ignore[return-value]
        if track == STAFF_TRACK:
            return self.staff  # type: ignore[return-value]
        raise ValueError(f"unknown session track: {track}")

    # customers
    async def create_customer(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        requires_password_reset: bool = False,
    ) -> Customer:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(c.email == normalized for c in self.customers.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="email"
                )
            customer = Customer(
                id=generate_uuid7(),
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                avatar_url=avatar_url,
                requires_password_reset=requires_password_reset,
            )
            self.customers[customer.id] = customer
            return dataclasses.replace(customer)

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        with self._data_lock:
            customer = self.customers.get(customer_id)
            return dataclasses.replace(customer) if customer else None

    async def get_customer_by_email(self, email: str) -> Optional[Customer]:
        normalized = normalize_email(email)
        with self._data_lock:
            customer = next(
                (c for c in self.customers.values() if c.email == normalized), None
            )
            return dataclasses.replace(customer) if customer else None

    async def update_customer_password(self, customer_id: str, password_hash: str) -> None:
        with self._data_lock:
            customer = self.customers.get(customer_id)
            if customer:
                customer.password_hash = password_hash
                customer.requires_password_reset = False

    async def update_customer_email(self, customer_id: str, email: str) -> None:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(
                c.email == normalized and c.id != customer_id
                for c in self.customers.values()
            ):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="email"
                )
            customer = self.customers.get(customer_id)
            if customer:
                customer.email = normalized

    async def set_customer_requires_password_reset(
        self, customer_id: str, required: bool = True
    ) -> None:
        with self._data_lock:
            customer = self.customers.get(customer_id)
            if customer:
                customer.requires_password_reset = required

    # staff
    async def create_staff(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        name: Optional[str] = None,
        role: str = "instructor",
        is_active: bool = True,
    ) -> Staff:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(s.email == normalized for s in self.staff.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="email"
                )
            staff = Staff(
                id=generate_uuid7(),
                email=normalized,
                password_hash=password_hash,
                name=name,
                role=role,
                is_active=is_active,
            )
            self.staff[staff.id] = staff
            return dataclasses.replace(staff)

    async def get_staff(self, staff_id: str) -> Optional[Staff]:
        with self._data_lock:
            staff = self.staff.get(staff_id)
            return dataclasses.replace(staff) if staff else None

    async def get_staff_by_email(self, email: str) -> Optional[Staff]:
        normalized = normalize_email(email)
        with self._data_lock:
            staff = next((s for s in self.staff.values() if s.email == normalized), None)
            return dataclasses.replace(staff) if staff else None

    async def update_staff_password(self, staff_id: str, password_hash: str) -> None:
        with self._data_lock:
            staff = self.staff.get(staff_id)
            if staff:
                staff.password_hash = password_hash

    async def set_staff_active(self, staff_id: str, active: bool) -> bool:
        with self._data_lock:
            staff = self.staff.get(staff_id)
            if not staff:
                return False
            staff.is_active = active
            return True

    # sessions
    async def create_session(self, track: str, principal_id: str) -> Session:
        with self._data_lock:
            if principal_id not in self._principals(track):
                raise ConstraintViolation(
                    "session principal missing",
                    {"principal_id": principal_id},
                    constraint="principal",
                )
            sess = Session.new(principal_id)
            self.sessions[track][sess.id] = sess
            return dataclasses.replace(sess)

    async def find_active_session(
        self, track: str, session_id: str, max_age_days: int
    ) -> Optional[Tuple[Session, Principal]]:
        with self._data_lock:
            sess = self.sessions[track].get(session_id)
            if not sess or not sess.is_active(max_age_days):
                return None
            principal = self._principals(track).get(sess.principal_id)
            if not principal:
                return None
            return dataclasses.replace(sess), dataclasses.replace(principal)

    async def revoke_session(self, track: str, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions[track].get(session_id)
            if not sess or sess.revoked_at is not None:
                return False
            sess.revoked_at = utcnow()
            return True

    async def revoke_all_sessions(self, track: str, principal_id: str) -> int:
        now = utcnow()
        revoked = 0
        with self._data_lock:
            for sess in self.sessions[track].values():
                if sess.principal_id == principal_id and sess.revoked_at is None:
                    sess.revoked_at = now
                    revoked += 1
        return revoked

    def _delete_in_batches(
        self, track: str, predicate: Callable[[Session], bool], batch_size: int
    ) -> int:
        deleted = 0
        while True:
            with self._data_lock:
                batch: List[str] = [
                    sid for sid, sess in self.sessions[track].items() if predicate(sess)
                ][:batch_size]
                for sid in batch:
                    self.sessions[track].pop(sid, None)
            deleted += len(batch)
            if len(batch) < batch_size:
                return deleted

    async def cleanup_revoked_sessions(
        self, track: str, retention_days: int, batch_size: int
    ) -> int:
        cutoff = utcnow() - timedelta(days=retention_days)
        return self._delete_in_batches(
            track,
            lambda sess: sess.revoked_at is not None and sess.revoked_at < cutoff,
            batch_size,
        )

    async def cleanup_expired_sessions(
        self, track: str, max_age_days: int, batch_size: int
    ) -> int:
        cutoff = utcnow() - timedelta(days=max_age_days + 1)
        return self._delete_in_batches(
            track, lambda sess: sess.created_at < cutoff, batch_size
        )

    # oauth
    async def find_or_create_oauth_customer(
        self, identity: OAuthIdentity
    ) -> Tuple[Customer, bool]:
        email = normalize_email(identity.email)
        link_key = (identity.provider, identity.provider_account_id)
        with self._data_lock:
            linked_id = self.oauth_accounts.get(link_key)
            if linked_id and linked_id in self.customers:
                return dataclasses.replace(self.customers[linked_id]), False

            customer = next((c for c in self.customers.values() if c.email == email), None)
            is_new = customer is None
            if customer is None:
                customer = Customer(
                    id=generate_uuid7(),
                    email=email,
                    first_name=identity.first_name,
                    last_name=identity.last_name,
                    avatar_url=identity.avatar_url,
                )
                self.customers[customer.id] = customer
            self.oauth_accounts[link_key] = customer.id
            self.logger.info(
                "oauth_account_linked",
                customer_id=customer.id,
                provider=identity.provider,
                is_new_customer=is_new,
            )
            return dataclasses.replace(customer), is_new
