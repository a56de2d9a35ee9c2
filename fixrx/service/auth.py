from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Union

from fixrx.config import Settings
from fixrx.logging import get_logger
from fixrx.service.credentials import CredentialVerifierRegistry, SocialTokenVerifier
from fixrx.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
    ValidationError,
)
from fixrx.service.jobs import (
    PASSWORD_RESET_EMAIL,
    SMS,
    VERIFICATION_EMAIL,
    WELCOME_EMAIL,
    JobQueue,
)
from fixrx.service.passwords import PasswordHasher, PasswordPolicy
from fixrx.service.tokens import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    TokenClaims,
    TokenPair,
    TokenService,
)
from fixrx.storage.errors import ConstraintViolation
from fixrx.storage.models import (
    SESSION_ELIGIBLE_STATUSES,
    User,
    UserRole,
    UserStatus,
    utcnow,
)

logger = get_logger(__name__)

SELF_SERVICE_ROLES = frozenset({UserRole.CONSUMER, UserRole.VENDOR})
SOCIAL_PROVIDERS = frozenset({"google", "facebook"})
PHONE_CODE_LENGTH = 6

USER_EXISTS_MESSAGE = "User already exists with this email or phone"
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
ACCOUNT_SUSPENDED_MESSAGE = "Account is suspended"
INVALID_REFRESH_MESSAGE = "Invalid refresh token"
INVALID_RESET_MESSAGE = "Invalid or expired reset token"
INVALID_VERIFICATION_MESSAGE = "Invalid or expired verification token"
INVALID_PHONE_CODE_MESSAGE = "Invalid verification code"
FORGOT_PASSWORD_MESSAGE = "If the email exists, a reset link has been sent"
RESEND_VERIFICATION_MESSAGE = "If the account exists and is unverified, a verification email has been sent"


def refresh_token_key(user_id: str) -> str:
    return f"refresh_token:{user_id}"


def password_reset_key(user_id: str) -> str:
    return f"password_reset:{user_id}"


def email_verification_key(user_id: str) -> str:
    return f"email_verification:{user_id}"


def phone_verification_key(phone: str) -> str:
    return f"phone_verification:{phone}"


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        role: UserRole = UserRole.CONSUMER,
        status: UserStatus = UserStatus.PENDING_VERIFICATION,
        password_hash: Optional[str] = None,
        auth0_id: Optional[str] = None,
        phone: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar: Optional[str] = None,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def get_user_by_auth0_id(self, auth0_id: str) -> Optional[User]: ...

    def find_user_by_identity(
        self, *, auth0_id: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def delete_user(self, user_id: str) -> bool: ...


class SessionCache(Protocol):
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    role: UserRole
    email: str
    user: User
    auth0_id: Optional[str] = None


@dataclass(frozen=True)
class ProfileDraft:
    """External profile held by the client until a role is chosen."""

    auth0_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar: Optional[str] = None


@dataclass(frozen=True)
class Authenticated:
    user: User
    tokens: TokenPair


@dataclass(frozen=True)
class NeedsRoleSelection:
    profile_draft: ProfileDraft


AuthOutcome = Union[Authenticated, NeedsRoleSelection]


def _coerce_role(role: Union[str, UserRole, None], *, allowed=SELF_SERVICE_ROLES) -> Optional[UserRole]:
    if role is None or role == "":
        return None
    try:
        value = UserRole(role)
    except ValueError:
        raise ValidationError("Invalid role", detail={"field": "role"}) from None
    if value not in allowed:
        raise ValidationError("Invalid role", detail={"field": "role"})
    return value


class AuthService:
    """Registration, login and session lifecycle.

    The store is synchronous; the cache, hasher and credential verifiers are
    awaited. Cache failures surface as ``CacheUnavailableError`` so token
    rotation and one-time codes fail closed.
    """

    def __init__(
        self,
        store: UserStore,
        cache: SessionCache,
        settings: Settings,
        *,
        tokens: TokenService,
        hasher: PasswordHasher,
        policy: PasswordPolicy,
        verifiers: CredentialVerifierRegistry,
        social_verifier: SocialTokenVerifier,
        jobs: JobQueue,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.hasher = hasher
        self.policy = policy
        self.verifiers = verifiers
        self.social_verifier = social_verifier
        self.jobs = jobs
        self.refresh_ttl_seconds = settings.refresh_token_ttl_days * 24 * 60 * 60
        self.verification_ttl_seconds = settings.email_verification_ttl_hours * 60 * 60

    # sessions

    async def _issue_session(self, user: User) -> TokenPair:
        """Issue a token pair and make its refresh token the only valid one."""
        pair = self.tokens.issue_pair(TokenClaims.for_user(user))
        await self.cache.set(
            refresh_token_key(user.id), pair.refresh_token, self.refresh_ttl_seconds
        )
        return pair

    async def _issue_verification_token(self, user: User) -> str:
        token = self.tokens.issue_purpose_token(
            TokenClaims.for_user(user), EMAIL_VERIFICATION, self.verification_ttl_seconds
        )
        await self.cache.set(email_verification_key(user.id), token, self.verification_ttl_seconds)
        return token

    def _touch_login(self, user: User) -> User:
        return self.store.update_user(user.id, last_login_at=utcnow()) or user

    async def register(
        self,
        email: str,
        password: str,
        *,
        role: Union[str, UserRole] = UserRole.CONSUMER,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Authenticated:
        email = email.strip().lower()
        user_role = _coerce_role(role) or UserRole.CONSUMER
        if self.store.get_user_by_email(email) or (phone and self.store.get_user_by_phone(phone)):
            raise ConflictError(USER_EXISTS_MESSAGE)

        check = self.policy.validate(password)
        if not check.valid:
            raise ValidationError(check.reason, detail={"field": "password"})

        password_hash = await self.hasher.hash(password)
        try:
            user = self.store.create_user(
                email,
                role=user_role,
                status=UserStatus.PENDING_VERIFICATION,
                password_hash=password_hash,
                phone=phone,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            raise ConflictError(USER_EXISTS_MESSAGE, detail=exc.detail) from exc

        pair = await self._issue_session(user)
        verification_token = await self._issue_verification_token(user)
        self.jobs.enqueue(
            WELCOME_EMAIL,
            to=user.email,
            first_name=user.first_name,
            token=verification_token,
        )
        logger.info("user_registered", user_id=user.id, role=user.role.value)
        return Authenticated(user=user, tokens=pair)

    async def login(self, email: str, password: str) -> Authenticated:
        user = self.store.get_user_by_email(email.strip().lower())
        if not user:
            logger.info("login_failed", reason="unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        verifier = self.verifiers.for_user(user)
        if verifier is None or not await verifier.verify(user, password):
            logger.info(
                "login_failed",
                reason="bad_credentials",
                user_id=user.id,
                verifier=verifier.name if verifier else None,
            )
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        if user.status not in SESSION_ELIGIBLE_STATUSES:
            logger.info("login_rejected_suspended", user_id=user.id)
            raise AuthenticationError(ACCOUNT_SUSPENDED_MESSAGE)

        pair = await self._issue_session(user)
        user = self._touch_login(user)
        logger.info("login_succeeded", user_id=user.id, verifier=verifier.name)
        return Authenticated(user=user, tokens=pair)

    async def refresh(self, refresh_token: Optional[str]) -> Authenticated:
        """Rotate a refresh token. Only the most recently issued one is accepted."""
        if not refresh_token:
            raise ValidationError("Refresh token is required", detail={"field": "refreshToken"})
        try:
            payload = self.tokens.verify_refresh(refresh_token)
        except (InvalidTokenError, TokenExpiredError):
            raise AuthenticationError(INVALID_REFRESH_MESSAGE) from None

        user_id = payload["sub"]
        stored = await self.cache.get(refresh_token_key(user_id))
        if stored is None or not hmac.compare_digest(stored, refresh_token):
            logger.warning("refresh_token_not_current", user_id=user_id)
            raise AuthenticationError(INVALID_REFRESH_MESSAGE)

        user = self.store.get_user(user_id)
        if not user or user.status not in SESSION_ELIGIBLE_STATUSES:
            raise AuthenticationError(INVALID_REFRESH_MESSAGE)

        pair = await self._issue_session(user)
        logger.info("refresh_rotated", user_id=user.id)
        return Authenticated(user=user, tokens=pair)

    async def logout(self, user_id: str) -> None:
        await self.cache.delete(refresh_token_key(user_id))
        logger.info("logout", user_id=user_id)

    # email verification

    async def verify_email(self, token: str) -> User:
        try:
            payload = self.tokens.verify_purpose(token, EMAIL_VERIFICATION)
        except (InvalidTokenError, TokenExpiredError):
            raise ValidationError(INVALID_VERIFICATION_MESSAGE) from None

        user_id = payload["sub"]
        key = email_verification_key(user_id)
        stored = await self.cache.get(key)
        if stored is None or not hmac.compare_digest(stored, token):
            raise ValidationError(INVALID_VERIFICATION_MESSAGE)
        if await self.cache.delete(key) != 1:
            raise ValidationError(INVALID_VERIFICATION_MESSAGE)

        user = self.store.get_user(user_id)
        if not user:
            raise ValidationError(INVALID_VERIFICATION_MESSAGE)
        fields: dict[str, Any] = {"email_verified": True}
        if user.status == UserStatus.PENDING_VERIFICATION:
            fields["status"] = UserStatus.ACTIVE
        user = self.store.update_user(user.id, **fields) or user
        logger.info("email_verified", user_id=user.id, status=user.status.value)
        return user

    async def resend_verification(self, email: str) -> str:
        user = self.store.get_user_by_email(email.strip().lower())
        if user and not user.email_verified:
            token = await self._issue_verification_token(user)
            self.jobs.enqueue(VERIFICATION_EMAIL, to=user.email, token=token)
            logger.info("verification_resent", user_id=user.id)
        return RESEND_VERIFICATION_MESSAGE

    # password reset

    async def forgot_password(self, email: str) -> str:
        user = self.store.get_user_by_email(email.strip().lower())
        if user is None:
            return FORGOT_PASSWORD_MESSAGE
        if user.is_suspended:
            logger.info("password_reset_skipped_suspended", user_id=user.id)
            return FORGOT_PASSWORD_MESSAGE
        ttl = self.settings.password_reset_ttl_seconds
        token = self.tokens.issue_purpose_token(TokenClaims.for_user(user), PASSWORD_RESET, ttl)
        await self.cache.set(password_reset_key(user.id), token, ttl)
        self.jobs.enqueue(PASSWORD_RESET_EMAIL, to=user.email, token=token)
        logger.info("password_reset_requested", user_id=user.id)
        return FORGOT_PASSWORD_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> None:
        try:
            payload = self.tokens.verify_purpose(token, PASSWORD_RESET)
        except (InvalidTokenError, TokenExpiredError):
            raise ValidationError(INVALID_RESET_MESSAGE) from None

        check = self.policy.validate(new_password)
        if not check.valid:
            raise ValidationError(check.reason, detail={"field": "password"})

        user_id = payload["sub"]
        key = password_reset_key(user_id)
        stored = await self.cache.get(key)
        if stored is None or not hmac.compare_digest(stored, token):
            logger.warning("password_reset_invalid_token", user_id=user_id)
            raise ValidationError(INVALID_RESET_MESSAGE)
        # Whoever deletes the entry owns the reset
        if await self.cache.delete(key) != 1:
            logger.warning("password_reset_already_consumed", user_id=user_id)
            raise ValidationError(INVALID_RESET_MESSAGE)

        password_hash = await self.hasher.hash(new_password)
        if self.store.update_user(user_id, password_hash=password_hash) is None:
            raise ValidationError(INVALID_RESET_MESSAGE)
        await self.cache.delete(refresh_token_key(user_id))
        logger.info("password_reset_completed", user_id=user_id)

    # phone verification

    async def send_phone_verification(self, phone: str) -> None:
        code = f"{secrets.randbelow(10 ** PHONE_CODE_LENGTH):0{PHONE_CODE_LENGTH}d}"
        await self.cache.set(
            phone_verification_key(phone), code, self.settings.phone_code_ttl_seconds
        )
        self.jobs.enqueue(SMS, to=phone, code=code)
        logger.info("phone_code_sent", phone=phone)

    async def verify_phone(self, phone: str, code: str, user_id: Optional[str] = None) -> None:
        key = phone_verification_key(phone)
        stored = await self.cache.get(key)
        if stored is None or not hmac.compare_digest(stored.encode(), code.encode()):
            raise ValidationError(INVALID_PHONE_CODE_MESSAGE, detail={"field": "code"})

        if user_id:
            owner = self.store.get_user_by_phone(phone)
            if owner and owner.id != user_id:
                raise ConflictError(
                    "Phone number is already in use", detail={"field": "phone"}
                )

        if await self.cache.delete(key) != 1:
            raise ValidationError(INVALID_PHONE_CODE_MESSAGE, detail={"field": "code"})

        if user_id:
            try:
                self.store.update_user(user_id, phone=phone, phone_verified=True)
            except ConstraintViolation as exc:
                raise ConflictError(
                    "Phone number is already in use", detail=exc.detail
                ) from exc
        logger.info("phone_verified", user_id=user_id)

    # external identities

    async def social_login(
        self,
        provider: str,
        access_token: str,
        profile: ProfileDraft,
        role: Union[str, UserRole, None] = None,
    ) -> AuthOutcome:
        """Sign in with a Google or Facebook profile.

        Looks up by provider id, then email. An unknown profile without a role
        yields :class:`NeedsRoleSelection` and persists nothing; the client
        calls again with the chosen role to create the account.
        """
        if provider not in SOCIAL_PROVIDERS:
            raise ValidationError("Unsupported social provider", detail={"field": "provider"})
        if not access_token:
            raise ValidationError("Missing required social login parameters")
        selected_role = _coerce_role(role)
        if not await self.social_verifier.verify(provider, access_token, profile.auth0_id):
            logger.warning("social_token_mismatch", provider=provider)
            raise AuthenticationError("Invalid social access token")

        email = profile.email.strip().lower()
        user = self.store.find_user_by_identity(auth0_id=profile.auth0_id, email=email)
        if user is None:
            if selected_role is None:
                return NeedsRoleSelection(profile)
            user = self._create_external_user(profile, selected_role)
        elif not user.auth0_id:
            user = self._link_external_identity(user, profile)

        outcome = await self._complete_external_login(user)
        logger.info("social_login_succeeded", user_id=user.id, provider=provider)
        return outcome

    async def auth0_callback(
        self, profile: ProfileDraft, role: Union[str, UserRole, None] = None
    ) -> AuthOutcome:
        selected_role = _coerce_role(role)
        user = self.store.get_user_by_auth0_id(profile.auth0_id)
        if user is None:
            if selected_role is None:
                return NeedsRoleSelection(profile)
            user = self._create_external_user(profile, selected_role)
        outcome = await self._complete_external_login(user)
        logger.info("auth0_callback_succeeded", user_id=user.id)
        return outcome

    def _create_external_user(self, profile: ProfileDraft, role: UserRole) -> User:
        try:
            user = self.store.create_user(
                profile.email,
                role=role,
                status=UserStatus.PENDING_VERIFICATION,
                auth0_id=profile.auth0_id,
                first_name=profile.first_name,
                last_name=profile.last_name,
                avatar=profile.avatar,
                email_verified=True,
            )
        except ConstraintViolation as exc:
            raise ConflictError(USER_EXISTS_MESSAGE, detail=exc.detail) from exc
        logger.info("external_user_created", user_id=user.id, role=role.value)
        return user

    def _link_external_identity(self, user: User, profile: ProfileDraft) -> User:
        try:
            linked = self.store.update_user(
                user.id,
                auth0_id=profile.auth0_id,
                avatar=profile.avatar or user.avatar,
                email_verified=True,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "External identity is linked to another account", detail=exc.detail
            ) from exc
        logger.info("external_identity_linked", user_id=user.id)
        return linked or user

    async def _complete_external_login(self, user: User) -> Authenticated:
        if user.is_suspended:
            raise AuthenticationError(ACCOUNT_SUSPENDED_MESSAGE)
        pair = await self._issue_session(user)
        return Authenticated(user=self._touch_login(user), tokens=pair)

    # request authentication

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("No token provided")
        # TokenExpiredError and InvalidTokenError propagate with their own messages
        payload = self.tokens.verify_access(token)
        user = self.store.get_user(payload["sub"])
        if not user:
            raise AuthenticationError("User not found")
        if user.status not in SESSION_ELIGIBLE_STATUSES:
            raise AuthenticationError("Account is not active")
        return AuthContext(
            user_id=user.id,
            role=user.role,
            email=user.email,
            user=user,
            auth0_id=user.auth0_id,
        )

    @staticmethod
    def require_role(ctx: AuthContext, *roles: Union[str, UserRole]) -> AuthContext:
        allowed = {UserRole(r) for r in roles}
        if ctx.role not in allowed:
            logger.warning("role_check_failed", user_id=ctx.user_id, role=ctx.role.value)
            raise AuthorizationError("Insufficient permissions")
        return ctx

    # administration

    async def set_user_status(self, user_id: str, status: Union[str, UserStatus]) -> User:
        try:
            new_status = UserStatus(status)
        except ValueError:
            raise ValidationError("Invalid status", detail={"field": "status"}) from None
        if new_status not in (UserStatus.ACTIVE, UserStatus.SUSPENDED):
            raise ValidationError("Invalid status", detail={"field": "status"})
        user = self.store.update_user(user_id, status=new_status)
        if user is None:
            raise NotFoundError("User not found")
        if new_status == UserStatus.SUSPENDED:
            await self.cache.delete(refresh_token_key(user_id))
        logger.info("user_status_changed", user_id=user_id, status=new_status.value)
        return user
