from __future__ import annotations

from datetime import timedelta
from typing import List, Optional, Protocol, Tuple

from todoauth.logging import get_logger
from todoauth.service.denylist import DenyList
from todoauth.service.errors import (
    ExpiredTokenError,
    InvalidTokenError,
    NotFoundError,
    RevokedTokenError,
    ServerError,
    ServiceError,
    ValidationError,
)
from todoauth.service.tokens import Clock, TokenCodec, TokenPayload
from todoauth.service.users import UserService
from todoauth.storage.errors import ConstraintViolation, RecordNotFound
from todoauth.storage.models import (
    AuthIdentity,
    CreateAuthIdentityParams,
    CreateUserParams,
    LoginParams,
    Role,
    TokenInfo,
    User,
)


class IdentityStore(Protocol):
    def create_auth_identity(self, params: CreateAuthIdentityParams) -> AuthIdentity: ...

    def get_auth_identity(self, auth_id: str) -> AuthIdentity: ...

    def list_auth_identities(self, user_id) -> List[AuthIdentity]: ...

    def update_auth_identity_role(self, auth_id: str, role: Role) -> AuthIdentity: ...

    def delete_auth_identity(self, auth_id: str, user_id) -> int: ...


class AuthService:
    """Login-or-register, logout with revocation, and bearer token validation."""

    # First pass plus one restart after losing a registration race
    MAX_LOGIN_ATTEMPTS = 2

    def __init__(
        self,
        store: IdentityStore,
        users: UserService,
        tokens: TokenCodec,
        denylist: DenyList,
        *,
        clock: Optional[Clock] = None,
        logger=None,
    ) -> None:
        self.store = store
        self.users = users
        self.tokens = tokens
        self.denylist = denylist
        self.clock: Clock = clock or tokens.clock
        self.logger = logger or get_logger(__name__)

    # login
    async def login_or_register(self, params: LoginParams) -> Tuple[str, User]:
        """Resolve or provision the user behind an external identity and mint a token.

        The assertion in ``params`` must already be validated upstream. A new
        user always starts with ``Role.USER``; the token carries whatever role
        the stored user has.

        Raises:
            ValidationError: a required field is empty
            EmailExistsError: no identity exists yet but the email is taken
            ServerError: storage failure, a second registration race, or a
                failed compensation
        """
        self._validate_login(params)
        for attempt in range(1, self.MAX_LOGIN_ATTEMPTS + 1):
            identity = self._lookup_identity(params.external_id)
            if identity is not None:
                user = await self._load_identity_user(identity)
                return self._mint(user), user

            user = await self.users.create_user(
                CreateUserParams(name=params.name, email=params.email, role=Role.USER)
            )
            try:
                self.store.create_auth_identity(
                    CreateAuthIdentityParams(
                        auth_id=params.external_id,
                        provider=params.provider,
                        user_id=user.id,
                        role=user.role,
                    )
                )
            except ConstraintViolation as exc:
                await self._discard_user(user)
                if exc.field == "auth_id" and attempt < self.MAX_LOGIN_ATTEMPTS:
                    self.logger.warning(
                        "login_identity_race_retry",
                        provider=params.provider,
                        attempt=attempt,
                    )
                    continue
                self.logger.error(
                    "login_identity_create_conflict",
                    provider=params.provider,
                    field=exc.field,
                    attempt=attempt,
                )
                raise ServerError("could not register identity") from exc
            except Exception as exc:
                await self._discard_user(user)
                self.logger.error(
                    "login_identity_create_failed",
                    provider=params.provider,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise ServerError("could not register identity") from exc

            await self.users.remember_external_id(params.external_id, user)
            self.logger.info(
                "user_registered", user_id=str(user.id), provider=params.provider
            )
            return self._mint(user), user

        # Unreachable: the final attempt either returns or raises
        raise ServerError("could not register identity")

    def _validate_login(self, params: LoginParams) -> None:
        for field in ("external_id", "provider", "email", "name"):
            value = getattr(params, field)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{field} is required", detail={"field": field})

    def _lookup_identity(self, external_id: str) -> Optional[AuthIdentity]:
        try:
            return self.store.get_auth_identity(external_id)
        except RecordNotFound:
            return None
        except Exception as exc:
            self.logger.error(
                "login_identity_lookup_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("identity lookup failed") from exc

    async def _load_identity_user(self, identity: AuthIdentity) -> User:
        try:
            return await self.users.get_user(identity.user_id)
        except NotFoundError as exc:
            self.logger.error(
                "login_identity_orphaned",
                user_id=str(identity.user_id),
                provider=identity.provider,
            )
            raise ServerError("identity references a missing user") from exc

    async def _discard_user(self, user: User) -> None:
        """Best-effort removal of a user created earlier in a failed login."""
        try:
            await self.users.delete_user(user.id)
        except ServiceError as exc:
            self.logger.warning(
                "login_compensation_failed",
                user_id=str(user.id),
                error_code=exc.error_code,
                error=exc.message,
            )

    def _mint(self, user: User) -> str:
        try:
            return self.tokens.mint(TokenPayload(user_id=user.id, role=user.role))
        except Exception as exc:
            self.logger.error(
                "token_mint_failed",
                user_id=str(user.id),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("could not issue token") from exc

    # logout
    async def logout(self, token: str) -> None:
        """Revoke ``token`` until its expiry; expired tokens are already inert."""
        try:
            claims = self.tokens.parse(token)
        except ExpiredTokenError:
            self.logger.info("logout_token_expired")
            return
        remaining = claims.remaining(self.clock())
        if remaining <= timedelta(0):
            self.logger.info("logout_token_expired")
            return
        try:
            await self.denylist.revoke(claims.jti, remaining)
        except Exception as exc:
            self.logger.error(
                "token_revoke_failed",
                jti=claims.jti,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("could not revoke token") from exc
        self.logger.info("token_revoked", user_id=str(claims.user_id), jti=claims.jti)

    # validation
    async def validate_token(self, token: str) -> TokenInfo:
        claims = self.tokens.parse(token)
        if await self.denylist.is_revoked(claims.jti):
            raise RevokedTokenError("token has been revoked")
        return TokenInfo(user_id=claims.user_id, role=claims.role)

    async def authenticate(self, authorization: Optional[str]) -> TokenInfo:
        """Validate a ``Bearer <token>`` Authorization header value."""
        return await self.validate_token(self.extract_bearer(authorization))

    @staticmethod
    def extract_bearer(authorization: Optional[str]) -> str:
        if not authorization:
            raise InvalidTokenError("missing bearer token")
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise InvalidTokenError("missing bearer token")
        return token.strip()
