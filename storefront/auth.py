import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import Tuple

from email_validator import EmailNotValidError, validate_email
from fastapi import Depends, Request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .crud import add_outbox_event
from .database import get_db, utcnow
from .errors import Conflict, Forbidden, StorageUnavailable, Unauthenticated, ValidationFailed
from .models import EmailVerification, User
from .schemas import LoginIn, RegisterIn
from .sessions import SessionStore, get_session_store

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 260_000
MIN_PASSWORD_LENGTH = 6
MIN_TOKEN_LENGTH = 20


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        algorithm, iterations, salt, expected = stored.split("$", 3)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------- guards ----------

def require_login(
    request: Request,
    db: Session = Depends(get_db),
    store: SessionStore = Depends(get_session_store),
) -> User:
    session_id = request.cookies.get(config.SESSION_COOKIE_NAME)
    if not session_id:
        raise Unauthenticated()
    user_id = store.get(db, session_id)
    if user_id is None:
        raise Unauthenticated()
    user = db.get(User, user_id)
    if user is None:
        raise Unauthenticated("User not found")
    return user


def require_admin(user: User = Depends(require_login)) -> User:
    if user.role != "admin":
        raise Forbidden()
    return user


# ---------- accounts ----------

def register_user(db: Session, data: RegisterIn) -> Tuple[User, str]:
    """Create an unverified user plus a single-use email verification token.

    The ``user.registered`` outbox event is staged in the same transaction, so
    the verification email goes out only if the account really exists.
    Returns the user and the verification URL.
    """
    name = data.name.strip()
    email = data.email.strip().lower()
    password = data.password.strip()

    errors = []
    if not name:
        errors.append("Name is required")
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        errors.append("Valid email is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if errors:
        raise ValidationFailed(errors=errors)

    if db.query(User.id).filter(User.email == email).first():
        raise Conflict("Email is already registered", errors=["Email is already registered"])

    token = secrets.token_urlsafe(32)
    verify_url = f"{config.FRONTEND_URL}/verify-email?token={token}"
    try:
        user = User(name=name, email=email, password_hash=hash_password(password), role="user", is_verified=False)
        db.add(user)
        db.flush()
        db.add(EmailVerification(
            user_id=user.id,
            token_hash=hash_token(token),
            expires_at=utcnow() + timedelta(hours=config.EMAIL_TOKEN_TTL_HOURS),
        ))
        add_outbox_event(db, "user.registered", {
            "user_id": user.id,
            "email": email,
            "name": name,
            "verify_url": verify_url,
        })
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Email is already registered", errors=["Email is already registered"])
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("registration failed for %s: %s", email, e)
        raise StorageUnavailable("Registration failed") from e

    db.refresh(user)
    logger.info("registered user_id=%s", user.id)
    return user, verify_url


def authenticate(db: Session, data: LoginIn) -> User:
    email = data.email.strip().lower()
    password = data.password.strip()
    if not email or not password:
        raise ValidationFailed("Email and password are required")

    user = db.query(User).filter(User.email == email).first()
    if user is None or not verify_password(password, user.password_hash):
        raise Unauthenticated("Invalid email or password")
    return user


def verify_email_token(db: Session, token: str) -> User:
    token = (token or "").strip()
    if len(token) < MIN_TOKEN_LENGTH:
        raise ValidationFailed("Missing or invalid token")

    row = db.query(EmailVerification).filter(EmailVerification.token_hash == hash_token(token)).first()
    if row is None:
        raise ValidationFailed("Invalid token")
    if row.used_at is not None:
        raise ValidationFailed("Token already used")
    if row.expires_at < utcnow():
        raise ValidationFailed("Token expired")

    try:
        consumed = (
            db.query(EmailVerification)
            .filter(EmailVerification.id == row.id, EmailVerification.used_at.is_(None))
            .update({EmailVerification.used_at: utcnow()}, synchronize_session=False)
        )
        if consumed != 1:
            db.rollback()
            raise ValidationFailed("Token already used")
        db.query(User).filter(User.id == row.user_id).update({User.is_verified: True}, synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("email verification failed: %s", e)
        raise StorageUnavailable("Verification failed") from e

    return db.get(User, row.user_id)
