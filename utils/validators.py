"""
Input validators shared by the API routes
"""
import re

EMAIL_REGEX = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

PASSWORD_MIN_LENGTH = 8


def validate_email(email):
    """Basic email shape check."""
    return bool(email) and isinstance(email, str) and bool(EMAIL_REGEX.match(email))


def validate_password(password):
    """
    Password policy: at least 8 characters with at least one letter and one digit.
    Returns (is_valid, error_message).
    """
    if not password or not isinstance(password, str):
        return False, 'Password is required.'
    if len(password) < PASSWORD_MIN_LENGTH:
        return False, f'Password must be at least {PASSWORD_MIN_LENGTH} characters long.'
    if not re.search(r'[A-Za-z]', password):
        return False, 'Password must contain at least one letter.'
    if not re.search(r'[0-9]', password):
        return False, 'Password must contain at least one number.'
    return True, None


def parse_amount(value):
    """Return value as a non-negative number, or None. Booleans are rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value or value < 0:  # NaN
        return None
    return value
