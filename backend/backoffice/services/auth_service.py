# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Authentication Service

Users log in with username and password; passwords are hashed with bcrypt
(BCRYPT_ROUNDS, 12 by default). Role and site assignment live on the User row and are
what the scope resolver consults.
"""

import re

import bcrypt
from flask import current_app

from ..extensions import db
from ..models import User, Site
from ..models.auth import ROLES, ROLE_ADMIN
from ..time_utils import utcnow


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one letter and one digit
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Za-z]', password):
        raise PasswordValidationError("Password must contain at least one letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """Hash password using bcrypt (BCRYPT_ROUNDS, default 12) after a strength check."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=current_app.config.get("BCRYPT_ROUNDS", 12))
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() is timing-safe. Malformed hashes verify as False.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    username: str,
    password: str,
    role: str,
    site_id: int | None = None,
    full_name: str | None = None,
) -> User:
    """
    Create a user. Non-admins must be assigned to an existing site.

    Raises PasswordValidationError or ValueError.
    """
    if role not in ROLES:
        raise ValueError(f"role must be one of {', '.join(ROLES)}")

    if site_id is None and role != ROLE_ADMIN:
        raise ValueError("Cashiers and managers must be assigned to a site")

    if site_id is not None and db.session.get(Site, site_id) is None:
        raise ValueError("Site not found")

    if db.session.query(User).filter_by(username=username).first():
        raise ValueError(f"Username '{username}' already exists")

    user = User(
        username=username,
        full_name=full_name,
        password_hash=hash_password(password),
        role=role,
        site_id=site_id,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """Return the active user matching the credentials, or None."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user or not user.is_active:
        return None

    if not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user
