"""
auth/service.py -- Authentication Service: the one entry point callers use.

Orchestrates credential check -> rate-limit check -> session issuance, answers
authorization questions for a presented token, and fronts user and role
administration so the rendering layer never talks to stores directly.

Security design decisions:
  Unified failure: an unknown email and a wrong password both run a bcrypt
       verification, both record an attempt and both raise the same
       AuthenticationFailed. Unknown emails are rate-limited in their own
       bucket keyed by the normalised email, so lockout behaviour does not
       reveal which emails exist either.

  Lockout first: the lockout check happens before any password comparison
       and before a session is issued. A locked bucket short-circuits without
       hashing.

  Atomic per bucket: check -> verify -> record runs under the limiter's
       bucket guard, so concurrent failures for one principal are counted one
       at a time.

  Recorded even when abandoned: once verification finishes the attempt is
       written regardless of what the caller does next. login_async() runs
       login() on the loop's executor behind asyncio.shield; cancelling the
       awaiting coroutine neither stops nor dequeues the job, so the record
       still lands.

  Deactivation and deletion revoke every session of the principal. Password
       changes do not (see auth/store.py).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from contextlib import nullcontext
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.engine import Engine

from auth.limiter import MemoryAttemptLog, RateLimiter, SqlAttemptLog
from auth.models import UNKNOWN_PRINCIPAL, Principal, UserStatus
from auth.schemas import RoleCreate, RoleUpdate, RoleView, UserCreate, UserUpdate, UserView, parse_input
from auth.sessions import MemorySessionStore, SessionManager, SqlSessionStore
from auth.store import CredentialStore, MemoryCredentialStore, SqlCredentialStore, normalize_email
from core.config import Settings, get_settings
from core.db import create_store_engine, resolve_now
from core.errors import AuthenticationFailed, NotFound, RateLimited, ValidationFailed
from core.query import FieldSet, ListParams, Page, paginate
from rbac.models import Action, Resource, parse_action, parse_resource, sorted_actions
from rbac.registry import RoleRegistry
from rbac.store import MemoryRoleStore, SqlRoleStore

logger = logging.getLogger("gatekeeper.auth")

USER_FIELDS: FieldSet[Principal] = FieldSet(
    search=(lambda p: p.name, lambda p: p.email),
    sortable={
        "id": lambda p: p.id,
        "name": lambda p: p.name,
        "email": lambda p: p.email,
        "role": lambda p: p.role,
        "status": lambda p: p.status,
        "last_login": lambda p: p.last_login,
        "last_password_change": lambda p: p.last_password_change,
    },
    filterable={
        "name": lambda p: p.name,
        "email": lambda p: p.email,
        "role": lambda p: p.role,
        "status": lambda p: p.status,
        "two_factor_enabled": lambda p: p.two_factor_enabled,
    },
)


class AuthService:
    """Facade over the credential store, registry, session manager and limiter.

    Usage:
        service = AuthService.from_settings(get_settings())
        token = service.login("john@example.com", "correct horse", "203.0.113.7")
        service.authorize(token, "Users", "Delete")   # True for an Admin
        service.logout(token)
    """

    def __init__(
        self,
        credentials: CredentialStore,
        registry: RoleRegistry,
        sessions: SessionManager,
        limiter: RateLimiter,
        default_page_size: int = 10,
        max_page_size: int = 100,
        engine: Engine | None = None,
    ) -> None:
        self.credentials = credentials
        self.registry = registry
        self.sessions = sessions
        self.limiter = limiter
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self._engine = engine
        registry.bind_references(credentials)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "AuthService":
        """Wire the in-memory stores, or the SQL stores when DATABASE_URL is set."""
        settings = settings or get_settings()
        engine: Engine | None = None
        if settings.database_url:
            engine = create_store_engine(settings.database_url)
            credentials: CredentialStore = SqlCredentialStore(engine, rounds=settings.bcrypt_rounds)
            roles = SqlRoleStore(engine)
            session_store = SqlSessionStore(engine)
            attempt_log = SqlAttemptLog(engine)
        else:
            credentials = MemoryCredentialStore(rounds=settings.bcrypt_rounds)
            roles = MemoryRoleStore()
            session_store = MemorySessionStore()
            attempt_log = MemoryAttemptLog()
        return cls(
            credentials=credentials,
            registry=RoleRegistry(roles, references=credentials),
            sessions=SessionManager(session_store, settings.secret_key, settings.session_ttl_seconds),
            limiter=RateLimiter(attempt_log, settings.lockout_window_seconds, settings.lockout_threshold),
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
            engine=engine,
        )

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, source_address: str, now: datetime | None = None) -> str:
        """Verify credentials and return a fresh session token.

        Raises RateLimited while the bucket is locked and AuthenticationFailed
        for an unknown email, a wrong password or an inactive account.
        """
        now = resolve_now(now)
        email = normalize_email(email)
        principal = self.credentials.find_by_email(email)
        principal_id = principal.id if principal is not None else UNKNOWN_PRINCIPAL

        with self.limiter.guard(principal_id, email):
            if self.limiter.is_locked(principal_id, now, email):
                logger.warning("Login refused for %s from %s: locked out", email, source_address)
                raise RateLimited()
            if principal is None:
                self.credentials.burn_verification(password)
                ok = False
            else:
                ok = self.credentials.verify_password(principal, password) and principal.is_active
            self.limiter.record_attempt(principal_id, ok, source_address, now, email=email)

        if not ok:
            logger.warning("Failed login for %s from %s", email, source_address)
            raise AuthenticationFailed()

        token = self.sessions.issue(principal.id, now)
        self.credentials.touch_last_login(principal.id, now)
        logger.info("Principal %s logged in from %s", principal.id, source_address)
        return token

    async def login_async(
        self, email: str, password: str, source_address: str, now: datetime | None = None
    ) -> str:
        """login() on a worker thread so bcrypt never blocks the event loop."""
        loop = asyncio.get_running_loop()
        job = loop.run_in_executor(None, self.login, email, password, source_address, now)
        # Cancellation stops here; the queued login still runs
        return await asyncio.shield(job)

    def logout(self, token: str) -> None:
        """Revoke the session. Always succeeds, even for an unknown token."""
        self.sessions.revoke(token)

    def validate(self, token: str, now: datetime | None = None) -> int | None:
        return self.sessions.validate(token, now)

    def _principal_for(self, token: str, now: datetime | None) -> Principal | None:
        principal_id = self.sessions.validate(token, now)
        if principal_id is None:
            return None
        principal = self.credentials.get(principal_id)
        if principal is None or not principal.is_active:
            return None
        return principal

    def current_user(self, token: str, now: datetime | None = None) -> UserView | None:
        principal = self._principal_for(token, now)
        return UserView.from_principal(principal) if principal is not None else None

    def authorize(
        self, token: str, resource: Resource | str, action: Action | str, now: datetime | None = None
    ) -> bool:
        """May the holder of token perform action on resource?

        Unknown resource/action names raise ValidationFailed. An invalid or
        expired token, a vanished or inactive principal, or a role name that
        no longer resolves all authorize nothing.
        """
        resource = parse_resource(resource)
        action = parse_action(action)
        principal = self._principal_for(token, now)
        if principal is None:
            return False
        return self.registry.authorize(self.registry.get_by_name(principal.role), resource, action)

    def permissions_for(self, token: str, now: datetime | None = None) -> dict[str, list[str]]:
        """Resource -> granted actions for the token's role; empty when unauthenticated."""
        principal = self._principal_for(token, now)
        role = self.registry.get_by_name(principal.role) if principal is not None else None
        if role is None:
            return {}
        return {p.resource.value: [a.value for a in sorted_actions(p.actions)] for p in role.permissions if p.actions}

    def purge_expired(self, now: datetime | None = None) -> dict[str, int]:
        """Housekeeping only; validation and lockout never depend on it."""
        now = resolve_now(now)
        return {"sessions": self.sessions.purge_expired(now), "attempts": self.limiter.purge(now)}

    # ------------------------------------------------------------------
    # User administration
    # ------------------------------------------------------------------

    def _list_params(self, page: int, page_size: int | None, search: str, sort: str, filter: str) -> ListParams:
        return parse_input(
            ListParams,
            {
                "page": page,
                "page_size": self.default_page_size if page_size is None else page_size,
                "search": search,
                "sort": sort,
                "filter": filter,
            },
        )

    def list_users(
        self, page: int = 1, page_size: int | None = None, search: str = "", sort: str = "", filter: str = ""
    ) -> Page[UserView]:
        params = self._list_params(page, page_size, search, sort, filter)
        result = paginate(self.credentials.list_all(), params, USER_FIELDS, self.max_page_size)
        return Page[UserView](
            data=[UserView.from_principal(p) for p in result.data],
            total=result.total,
            page=result.page,
            page_size=result.page_size,
        )

    def _require_user(self, user_id: int) -> Principal:
        principal = self.credentials.get(user_id)
        if principal is None:
            raise NotFound("User not found.")
        return principal

    def get_user(self, user_id: int) -> UserView:
        return UserView.from_principal(self._require_user(user_id))

    def create_user(self, data: UserCreate | Mapping[str, Any], now: datetime | None = None) -> UserView:
        body = parse_input(UserCreate, data)
        now = resolve_now(now)
        principal = Principal(
            email=body.email,
            name=body.name,
            role=body.role,
            status=body.status,
            two_factor_enabled=body.two_factor_enabled,
            password_digest=self.credentials.hash(body.password),
            last_password_change=now,
            created_at=now,
        )
        # The registry lock keeps the role from being deleted before the row lands
        with self.registry.holding_role(body.role):
            principal.id = self.credentials.create(principal)
        logger.info("Created user %s (id=%s, role=%r)", principal.email, principal.id, principal.role)
        return self.get_user(principal.id)

    def update_user(
        self, user_id: int, data: UserUpdate | Mapping[str, Any], now: datetime | None = None
    ) -> UserView:
        body = parse_input(UserUpdate, data)
        target = self._require_user(user_id)
        fields = body.model_dump(exclude_none=True, exclude={"password", "confirm_password"})
        if not fields and body.password is None:
            raise ValidationFailed("No fields to update.")
        if body.password is not None:
            # Hashed before anything is written: a rejected password leaves the record untouched
            fields["password_digest"] = self.credentials.hash(body.password)
            fields["last_password_change"] = resolve_now(now)

        assigning = self.registry.holding_role(fields["role"]) if "role" in fields else nullcontext()
        with assigning:
            if not self.credentials.update(user_id, **fields):
                raise NotFound("User not found.")
        if body.password is not None:
            logger.info("Password changed for user %s", user_id)
        if target.is_active and fields.get("status") == UserStatus.INACTIVE:
            self.sessions.revoke_all(user_id)
            logger.info("Deactivated user %s", user_id)
        return self.get_user(user_id)

    def delete_user(self, user_id: int) -> None:
        """Delete a principal and every session it holds."""
        if not self.credentials.delete(user_id):
            raise NotFound("User not found.")
        self.sessions.revoke_all(user_id)
        logger.info("Deleted user %s", user_id)

    # ------------------------------------------------------------------
    # Role administration
    # ------------------------------------------------------------------

    def list_roles(
        self, page: int = 1, page_size: int | None = None, search: str = "", sort: str = "", filter: str = ""
    ) -> Page[RoleView]:
        params = self._list_params(page, page_size, search, sort, filter)
        result = self.registry.list_all(params, self.max_page_size)
        return Page[RoleView](
            data=[RoleView.from_role(r) for r in result.data],
            total=result.total,
            page=result.page,
            page_size=result.page_size,
        )

    def get_role(self, role_id: int) -> RoleView:
        return RoleView.from_role(self.registry.require(role_id))

    def create_role(self, data: RoleCreate | Mapping[str, Any]) -> RoleView:
        body = parse_input(RoleCreate, data)
        return RoleView.from_role(self.registry.create(body.name, body.color))

    def update_role(self, role_id: int, data: RoleUpdate | Mapping[str, Any]) -> RoleView:
        body = parse_input(RoleUpdate, data)
        if body.name is None and body.color is None:
            raise ValidationFailed("No fields to update.")
        return RoleView.from_role(self.registry.update(role_id, name=body.name, color=body.color))

    def set_role_permission(
        self, role_id: int, resource: Resource | str, actions: Iterable[Action | str]
    ) -> RoleView:
        return RoleView.from_role(self.registry.set_permission(role_id, resource, actions))

    def toggle_role_permission(self, role_id: int, resource: Resource | str, action: Action | str) -> RoleView:
        return RoleView.from_role(self.registry.toggle_permission(role_id, resource, action))

    def delete_role(self, role_id: int) -> None:
        self.registry.delete(role_id)

    def list_resources(self) -> list[str]:
        return [r.value for r in self.registry.list_resources()]

    def seed_default_roles(self) -> int:
        return self.registry.seed_defaults()
