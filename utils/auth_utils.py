"""
Authentication utility functions
"""
import secrets
from werkzeug.security import generate_password_hash, check_password_hash


def hash_password(password):
    """Generate password hash"""
    return generate_password_hash(password)


def verify_password(password_hash, password):
    """Verify password against hash"""
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


def random_password():
    """Unusable random password for accounts created from a verified phone."""
    return secrets.token_urlsafe(24)
