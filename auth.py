import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import bcrypt
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import Settings, get_settings
from errors import NotFoundError, ValidationError
from models import utcnow
from schemas import ModuleRecord, ProfileRecord, UserRecord
from stores import BudgetStore

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"

DEFAULT_MODULES = (
    ("need", "Need"),
    ("want", "Want"),
    ("savings", "Savings"),
    ("investments", "Investments"),
)


@dataclass(frozen=True)
class Session:
    user: UserRecord
    access_token: str
    expires_at: datetime


@dataclass(frozen=True)
class AuthResult:
    data: Optional[Session] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(
        plain_password.encode("utf-8"), hashed_password.encode("utf-8")
    )


def _normalise_email(email: str) -> str:
    return email.strip().lower()


class IdentityProvider:
    """Users, credentials, signed access tokens and profiles on top of a store."""

    def __init__(self, store: BudgetStore, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    def _serializer(self) -> URLSafeTimedSerializer:
        return URLSafeTimedSerializer(self.settings.session_secret, salt="budget-session")

    @property
    def _ttl(self) -> timedelta:
        return timedelta(hours=self.settings.session_ttl_hours)

    def _issue(self, user: UserRecord) -> Session:
        token = self._serializer().dumps({"u": user.id})
        return Session(user=user, access_token=token, expires_at=utcnow() + self._ttl)

    def sign_up(
        self, email: str, password: str, full_name: Optional[str] = None
    ) -> AuthResult:
        email = _normalise_email(email)
        if self.store.get_user_by_email(email):
            return AuthResult(error="User already exists")
        user = self.store.create_user(
            UserRecord(email=email, full_name=full_name), hash_password(password)
        )
        self.create_profile(
            user.id, "Primary", full_name or "Primary Profile", is_primary=True
        )
        self._seed_modules(user.id)
        logger.info(f"user_signed_up: user={user.id}")
        return AuthResult(data=self._issue(user))

    def sign_in(self, email: str, password: str) -> AuthResult:
        email = _normalise_email(email)
        stored_hash = self.store.get_password_hash(email)
        if not stored_hash or not verify_password(password, stored_hash):
            return AuthResult(error="Invalid email or password")
        user = self.store.get_user_by_email(email)
        if user is None:
            return AuthResult(error="User not found")
        return AuthResult(data=self._issue(user))

    def get_session(self, access_token: str) -> Optional[Session]:
        max_age = int(self._ttl.total_seconds())
        try:
            payload, issued_at = self._serializer().loads(
                access_token, max_age=max_age, return_timestamp=True
            )
        except BadSignature:
            return None
        user = self.store.get_user(payload.get("u", ""))
        if user is None:
            return None
        expires_at = issued_at.replace(tzinfo=None) + self._ttl
        return Session(user=user, access_token=access_token, expires_at=expires_at)

    def _seed_modules(self, user_id: str) -> None:
        for order, (name, display) in enumerate(DEFAULT_MODULES, start=1):
            self.store.save_module(
                ModuleRecord(
                    user_id=user_id,
                    module_name=name,
                    display_name=display,
                    include_in_budget=True,
                    is_system_module=True,
                    sort_order=order,
                )
            )

    def list_profiles(self, user_id: str) -> list[ProfileRecord]:
        profiles = [p for p in self.store.list_profiles(user_id) if p.is_active]
        return sorted(profiles, key=lambda p: (not p.is_primary, p.created_at))

    def create_profile(
        self,
        user_id: str,
        profile_name: str,
        display_name: Optional[str] = None,
        is_primary: bool = False,
    ) -> ProfileRecord:
        profile_name = profile_name.strip()
        if not profile_name:
            raise ValidationError("profile_name", "Profile name is required")
        existing = self.store.list_profiles(user_id)
        if any(p.profile_name == profile_name for p in existing):
            raise ValidationError(
                "profile_name", f"Profile '{profile_name}' already exists"
            )
        profile = self.store.save_profile(
            ProfileRecord(
                user_id=user_id,
                profile_name=profile_name,
                display_name=display_name or profile_name,
                is_primary=is_primary or not existing,
            )
        )
        if profile.is_primary:
            self._demote_others(user_id, profile.id)
        return profile

    def _demote_others(self, user_id: str, primary_id: str) -> None:
        for other in self.store.list_profiles(user_id):
            if other.id != primary_id and other.is_primary:
                self.store.save_profile(
                    other.model_copy(update={"is_primary": False, "updated_at": utcnow()})
                )

    def _get_profile(self, user_id: str, profile_id: str) -> ProfileRecord:
        profile = self.store.get_profile(user_id, profile_id)
        if profile is None:
            raise NotFoundError(f"Profile {profile_id} not found")
        return profile

    def set_primary_profile(self, user_id: str, profile_id: str) -> ProfileRecord:
        profile = self._get_profile(user_id, profile_id)
        if not profile.is_active:
            raise ValidationError("profile_id", "An inactive profile cannot be primary")
        profile = self.store.save_profile(
            profile.model_copy(update={"is_primary": True, "updated_at": utcnow()})
        )
        self._demote_others(user_id, profile.id)
        return profile

    def deactivate_profile(self, user_id: str, profile_id: str) -> ProfileRecord:
        profile = self._get_profile(user_id, profile_id)
        if profile.is_primary:
            raise ValidationError(
                "profile_id", "The primary profile cannot be deactivated"
            )
        return self.store.save_profile(
            profile.model_copy(update={"is_active": False, "updated_at": utcnow()})
        )


AuthListener = Callable[[str, Optional[Session]], None]


class AuthSession:
    """Identity held by one caller.

    ``start`` restores a previously issued token, ``sign_out`` clears it.
    Listeners registered with ``on_auth_change`` hear every transition.
    """

    def __init__(self, provider: IdentityProvider) -> None:
        self.provider = provider
        self.current: Optional[Session] = None
        self._listeners: list[AuthListener] = []

    @property
    def user(self) -> Optional[UserRecord]:
        return self.current.user if self.current else None

    @property
    def user_id(self) -> Optional[str]:
        return self.current.user.id if self.current else None

    def _notify(self) -> None:
        event = SIGNED_IN if self.current else SIGNED_OUT
        for listener in list(self._listeners):
            listener(event, self.current)

    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def start(self, access_token: Optional[str] = None) -> Optional[Session]:
        self.current = self.provider.get_session(access_token) if access_token else None
        self._notify()
        return self.current

    def sign_up(
        self, email: str, password: str, full_name: Optional[str] = None
    ) -> AuthResult:
        result = self.provider.sign_up(email, password, full_name)
        if result.data:
            self.current = result.data
            self._notify()
        return result

    def sign_in(self, email: str, password: str) -> AuthResult:
        result = self.provider.sign_in(email, password)
        if result.data:
            self.current = result.data
            self._notify()
        return result

    def sign_out(self) -> AuthResult:
        self.current = None
        self._notify()
        return AuthResult()

    def profiles(self) -> list[ProfileRecord]:
        if not self.user_id:
            return []
        return self.provider.list_profiles(self.user_id)

    def create_profile(
        self, profile_name: str, display_name: Optional[str] = None
    ) -> Optional[ProfileRecord]:
        if not self.user_id:
            return None
        return self.provider.create_profile(self.user_id, profile_name, display_name)
