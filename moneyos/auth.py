from __future__ import annotations

from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from moneyos.config import Settings
from moneyos.errors import (
    AuthError,
    ConflictError,
    InvalidCredentialsError,
    MissingTokenError,
    ValidationError,
)
from moneyos.ledger_store import LedgerStore, users

# bcrypt rejects passwords longer than this.
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def issue_token(settings: Settings, user_id: int, username: str) -> str:
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expires_minutes)
    claims = {"sub": str(user_id), "username": username, "exp": expires_at}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(settings: Settings, token: str) -> int:
    """Return the user id carried by a bearer token."""
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise AuthError("Failed to authenticate token.") from exc
    try:
        return int(claims["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthError("Failed to authenticate token.") from exc


def extract_bearer(authorization: str | None) -> str:
    if not authorization or not authorization.strip():
        raise MissingTokenError("No token provided.")
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() == "bearer":
        token = credentials.strip()
    else:
        # Older clients send the raw token without a scheme.
        token = authorization.strip()
    if not token:
        raise MissingTokenError("No token provided.")
    return token


def register_user(store: LedgerStore, username: str | None, password: str | None, currency: str) -> int:
    username = (username or "").strip()
    if not username or not password:
        raise ValidationError("Username and password required.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    stmt = (
        insert(users)
        .values(
            username=username,
            hashed_password=hash_password(password),
            currency=currency,
            recurring_expenses=[],
        )
        .returning(users.c.id)
    )
    try:
        with store.begin() as conn:
            user_id = conn.execute(stmt).scalar_one()
    except IntegrityError as exc:
        raise ConflictError("Username already taken.") from exc
    return user_id


def authenticate(store: LedgerStore, username: str | None, password: str | None) -> dict:
    username = (username or "").strip()
    if not username or not password:
        raise ValidationError("Username and password required.")
    with store.begin() as conn:
        row = conn.execute(select(users).where(users.c.username == username)).mappings().first()
    if not row:
        raise InvalidCredentialsError("User not found.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise InvalidCredentialsError("Invalid credentials.")
    if not verify_password(password, row["hashed_password"]):
        raise InvalidCredentialsError("Invalid credentials.")
    return dict(row)
