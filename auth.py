import logging
import re
from typing import Optional

from email_validator import validate_email, EmailNotValidError
from sqlalchemy.exc import SQLAlchemyError

from crypto_util import EncryptionService
from errors import AuthError, ValidationError
from models import db, User, utcnow
from results import Result
from sessions import SessionStore

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
MIN_PASSWORD_LENGTH = 8

NOT_AUTHENTICATED = "Not authenticated"
INVALID_CREDENTIALS = "Invalid credentials"


# ---------- Validation ----------
def is_email(value: str) -> bool:
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def check_username(username: str) -> None:
    if not 3 <= len(username) <= 50:
        raise ValidationError("Username must be 3-50 characters")
    if not USERNAME_RE.match(username):
        raise ValidationError("Username can only contain letters, numbers, and underscores")


def check_email(email: str) -> None:
    if not is_email(email):
        raise ValidationError("Invalid email address")


def check_password(password: str, label: str = "Password") -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"{label} must be at least {MIN_PASSWORD_LENGTH} characters")


def _taken(column, value, exclude_id: Optional[int] = None) -> bool:
    query = User.query.filter(column == value)
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    return db.session.query(query.exists()).scalar()


class AuthService:
    """Registration, login and the session checks that gate the vault.

    Every method takes the caller's session token and the current time
    explicitly and reports its outcome as a ``Result``.
    """

    def __init__(self, crypto: EncryptionService, sessions: SessionStore):
        self.crypto = crypto
        self.sessions = sessions

    def _start_session(self, user: User, now: float) -> str:
        session = self.sessions.create(user.id, user.username, user.email, now)
        return session.token

    def register(self, username: str, email: str, password: str, now: float) -> Result:
        username = (username or "").strip()
        email = (email or "").strip().lower()

        try:
            check_username(username)
            check_email(email)
            check_password(password)
            if _taken(User.username, username):
                raise ValidationError("Username already taken")
            if _taken(User.email, email):
                raise ValidationError("Email already registered")
        except ValidationError as e:
            return Result.fail(e.message)

        user = User(
            username=username,
            email=email,
            pw_hash=self.crypto.hash_password(password),
        )
        try:
            db.session.add(user)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not create user")
            return Result.fail("Registration failed. Please try again.")

        logger.info("Registered user %s", user.id)
        result = Result.ok("Account created successfully", user=user.to_dict())
        result.token = self._start_session(user, now)
        return result

    def login(self, identifier: str, password: str, now: float) -> Result:
        identifier = (identifier or "").strip()

        if is_email(identifier):
            user = User.query.filter_by(email=identifier.lower()).first()
            kind = "email"
        else:
            user = User.query.filter_by(username=identifier).first()
            kind = "username"

        if not user or not self.crypto.verify_password(password or "", user.pw_hash):
            logger.warning("Failed login by %s", kind)
            return Result.fail(INVALID_CREDENTIALS)

        user.last_login = utcnow()
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not record last login for user %s", user.id)

        logger.info("User %s logged in", user.id)
        result = Result.ok("Login successful", user=user.to_dict())
        result.token = self._start_session(user, now)
        return result

    def logout(self, token: Optional[str]) -> Result:
        if self.sessions.destroy(token):
            logger.info("Session closed")
        return Result.ok("Logged out successfully")

    def is_authenticated(self, token: Optional[str], now: float) -> bool:
        return self.sessions.touch(token, now) is not None

    def current_user(self, token: Optional[str], now: float) -> Optional[dict]:
        session = self.sessions.touch(token, now)
        if session is None:
            return None
        return {"id": session.user_id, "username": session.username, "email": session.email}

    def require_user_id(self, token: Optional[str], now: float) -> int:
        session = self.sessions.touch(token, now)
        if session is None:
            raise AuthError(NOT_AUTHENTICATED)
        return session.user_id

    def change_password(self, token: Optional[str], current_password: str,
                        new_password: str, now: float) -> Result:
        session = self.sessions.touch(token, now)
        if session is None:
            return Result.fail(NOT_AUTHENTICATED, require_auth=True)

        try:
            check_password(new_password, label="New password")
        except ValidationError as e:
            return Result.fail(e.message)

        user = db.session.get(User, session.user_id)
        if not user or not self.crypto.verify_password(current_password or "", user.pw_hash):
            return Result.fail("Current password is incorrect")

        user.pw_hash = self.crypto.hash_password(new_password)
        user.updated_at = utcnow()
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not change password for user %s", user.id)
            return Result.fail("Failed to change password. Please try again.")

        return Result.ok("Password changed successfully")

    def update_profile(self, token: Optional[str], username: str, email: str,
                       now: float) -> Result:
        session = self.sessions.touch(token, now)
        if session is None:
            return Result.fail(NOT_AUTHENTICATED, require_auth=True)

        username = (username or "").strip()
        email = (email or "").strip().lower()

        try:
            check_username(username)
            check_email(email)
            if _taken(User.username, username, exclude_id=session.user_id):
                raise ValidationError("Username already taken")
            if _taken(User.email, email, exclude_id=session.user_id):
                raise ValidationError("Email already in use")
        except ValidationError as e:
            return Result.fail(e.message)

        user = db.session.get(User, session.user_id)
        if user is None:
            return Result.fail("Failed to update profile")

        user.username = username
        user.email = email
        user.updated_at = utcnow()
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not update profile for user %s", user.id)
            return Result.fail("Failed to update profile")

        session.username = username
        session.email = email
        return Result.ok("Profile updated successfully", user=user.to_dict())
