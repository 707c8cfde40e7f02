"""
OTP generation, hashing and validation for phone verification.
OTPs are bcrypt-hashed before storage; never store or log the plain OTP.
"""
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import bcrypt

from utils.clock import utcnow, to_naive_utc

logger = logging.getLogger(__name__)

# OTP length, expiry and attempt ceiling
OTP_LENGTH = 6
OTP_EXPIRY_MINUTES = 5
MAX_OTP_ATTEMPTS = 3
OTP_BCRYPT_ROUNDS = 10

_OTP_FORMAT = re.compile(r'^[0-9]{6}$')

OTP_FORMAT_MSG = "Verification code must be 6 digits."
OTP_EXCEEDED_MSG = "Too many attempts. Please request a new code."
OTP_EXPIRED_MSG = "Verification code has expired. Please request a new code."
OTP_MISMATCH_MSG = "Verification code does not match. ({remaining} attempts left)"
OTP_MISMATCH_LAST_MSG = "Verification code does not match. Please request a new code."


@dataclass
class GeneratedOTP:
    otp: str  # plaintext, deliver then discard
    otp_hash: str
    expires_at: datetime


@dataclass
class OTPValidationResult:
    success: bool
    error: Optional[str] = None
    remaining_attempts: Optional[int] = None
    reason: Optional[str] = None  # format, exceeded, expired, mismatch


def generate_otp() -> str:
    """Generate a secure 6-digit numeric OTP in 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


def hash_otp(otp: str) -> str:
    """bcrypt hash with a fixed work factor."""
    return bcrypt.hashpw(otp.encode('utf-8'), bcrypt.gensalt(rounds=OTP_BCRYPT_ROUNDS)).decode('utf-8')


def verify_otp(plain_otp: str, otp_hash: str) -> bool:
    """Constant-time check of a plain OTP against its stored hash."""
    try:
        return bcrypt.checkpw(plain_otp.encode('utf-8'), otp_hash.encode('utf-8'))
    except (ValueError, TypeError) as e:
        logger.error("OTP hash comparison failed: %s", e)
        return False


def otp_expires_at(now=None, minutes=OTP_EXPIRY_MINUTES) -> datetime:
    """Return expiry datetime for a new OTP (5 minutes from now)."""
    return (now or utcnow()) + timedelta(minutes=minutes)


def create_otp(now=None) -> GeneratedOTP:
    """Generate a code together with its hash and expiry."""
    otp = generate_otp()
    return GeneratedOTP(otp=otp, otp_hash=hash_otp(otp), expires_at=otp_expires_at(now))


def is_valid_otp_format(otp) -> bool:
    return isinstance(otp, str) and bool(_OTP_FORMAT.fullmatch(otp))


def is_max_attempts_exceeded(attempts: int) -> bool:
    return attempts >= MAX_OTP_ATTEMPTS


def is_otp_expired(expires_at: datetime, now=None) -> bool:
    return (now or utcnow()) >= to_naive_utc(expires_at)


def remaining_seconds(expires_at: datetime, now=None) -> int:
    """Seconds left before expiry, never negative."""
    delta = to_naive_utc(expires_at) - (now or utcnow())
    return max(0, int(delta.total_seconds()))


def validate_otp(input_otp, stored_hash, expires_at, attempts, now=None) -> OTPValidationResult:
    """
    Decide whether input_otp unlocks the stored record.

    Checks run in order and stop at the first failure: format, attempt ceiling,
    expiry, hash. A format failure does not consume an attempt; the caller
    persists attempts + 1 for the other failures and verified=True on success.
    """
    if not is_valid_otp_format(input_otp):
        return OTPValidationResult(success=False, error=OTP_FORMAT_MSG, reason='format')

    if is_max_attempts_exceeded(attempts):
        return OTPValidationResult(
            success=False, error=OTP_EXCEEDED_MSG, remaining_attempts=0, reason='exceeded'
        )

    if is_otp_expired(expires_at, now):
        return OTPValidationResult(success=False, error=OTP_EXPIRED_MSG, reason='expired')

    if not verify_otp(input_otp, stored_hash):
        remaining = MAX_OTP_ATTEMPTS - attempts - 1
        error = OTP_MISMATCH_MSG.format(remaining=remaining) if remaining > 0 else OTP_MISMATCH_LAST_MSG
        return OTPValidationResult(
            success=False, error=error, remaining_attempts=remaining, reason='mismatch'
        )

    return OTPValidationResult(success=True)
