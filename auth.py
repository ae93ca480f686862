import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, FrozenSet, Optional, Tuple

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from errors import Forbidden, IdentityNotFound, InvalidCredential, NotFound, Unauthenticated
from models import User
from store import Store

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

ROLE_PERMISSIONS = {
    "customer": frozenset({"cart:use", "orders:create", "orders:read_own"}),
    "vendor": frozenset({"orders:read_own", "catalog:write", "stock:write"}),
    "admin": frozenset({
        "orders:read_any",
        "orders:update",
        "catalog:write",
        "catalog:admin",
        "stock:write",
        "users:admin",
    }),
}


@dataclass(frozen=True)
class Identity:
    user_id: int
    email: str
    role: str

    @property
    def permissions(self) -> FrozenSet[str]:
        return ROLE_PERMISSIONS.get(self.role, frozenset())

    def can(self, permission: str) -> bool:
        return permission in self.permissions


class Authenticator:
    """Issues and verifies bearer tokens.

    The token only carries the user id; the role is looked up on every request so
    role changes apply to tokens that were issued earlier.
    """

    def __init__(self, store: Store, secret: str, expires_min: int = 60, bcrypt_rounds: int = 12):
        self.store = store
        self.secret = secret
        self.expires_min = expires_min
        self.password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=bcrypt_rounds)

    def hash_password(self, password: str) -> str:
        return self.password_ctx.hash(password)

    def verify_password(self, password: str, hashed: str) -> bool:
        if not hashed:
            return False
        return self.password_ctx.verify(password, hashed)

    def create_token(self, user: User) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "iat": now,
            "exp": now + timedelta(minutes=self.expires_min),
        }
        return jwt.encode(payload, self.secret, algorithm="HS256")

    def decode_token(self, token: str) -> dict:
        try:
            return jwt.decode(token, self.secret, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            raise InvalidCredential("Token expired")
        except jwt.InvalidTokenError:
            raise InvalidCredential("Invalid token")

    def authenticate(self, token: Optional[str]) -> Identity:
        if not token:
            raise InvalidCredential("Not authenticated")
        payload = self.decode_token(token)
        try:
            user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise InvalidCredential("Invalid token")

        try:
            user = self.store.find_user_by_id(user_id)
        except NotFound:
            raise IdentityNotFound()
        if not user.is_active:
            raise IdentityNotFound("User is inactive")
        return Identity(user_id=user.id, email=user.email, role=user.role)

    def register(self, email: str, password: str, first_name: Optional[str] = None,
                 last_name: Optional[str] = None, role: str = "customer") -> Tuple[User, str]:
        user = self.store.create_user(
            email, self.hash_password(password), first_name=first_name, last_name=last_name, role=role
        )
        logger.info("Registered user %s (%s)", user.id, user.role)
        return user, self.create_token(user)

    def login(self, email: str, password: str) -> Tuple[User, str]:
        user = self.store.find_user_by_email(email)
        if user is None or not user.is_active or not self.verify_password(password, user.password_hash):
            logger.info("Failed login for %s", email)
            raise Unauthenticated("Invalid credentials")
        return user, self.create_token(user)


def get_authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


def current_identity(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                     authenticator: Authenticator = Depends(get_authenticator)) -> Identity:
    token = credentials.credentials if credentials else None
    try:
        return authenticator.authenticate(token)
    except Unauthenticated as exc:
        logger.info("Rejected credential: %s", exc.message)
        raise


def optional_identity(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                      authenticator: Authenticator = Depends(get_authenticator)) -> Optional[Identity]:
    """Like current_identity, but anonymous callers get None instead of a 401."""
    if credentials is None:
        return None
    return current_identity(credentials, authenticator)


def require(*permissions: str) -> Callable[..., Identity]:
    """Dependency that lets the request through only if the caller holds every permission."""
    required = frozenset(permissions)

    def dependency(identity: Identity = Depends(current_identity)) -> Identity:
        if not required <= identity.permissions:
            logger.info("User %s (%s) lacks %s", identity.user_id, identity.role, sorted(required))
            raise Forbidden()
        return identity

    return dependency


def require_any(*permissions: str) -> Callable[..., Identity]:
    accepted = frozenset(permissions)

    def dependency(identity: Identity = Depends(current_identity)) -> Identity:
        if not accepted & identity.permissions:
            logger.info("User %s (%s) lacks any of %s", identity.user_id, identity.role, sorted(accepted))
            raise Forbidden()
        return identity

    return dependency
