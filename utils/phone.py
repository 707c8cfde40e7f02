"""
Korean mobile number validation and formatting.
Numbers are stored in E.164 form (+821012345678).
"""
import re
from dataclasses import dataclass
from typing import Optional

KOREA_COUNTRY_CODE = '82'

# 010-1234-5678, 01012345678, 011-123-4567
_KOREAN_PHONE = re.compile(r'^(01[0-9])-?([0-9]{3,4})-?([0-9]{4})$')
_E164 = re.compile(r'^\+[1-9][0-9]{7,14}$')

PHONE_REQUIRED_MSG = "Please enter a phone number."
PHONE_INVALID_MSG = "Invalid phone number format. (e.g. 010-1234-5678)"


@dataclass
class PhoneValidation:
    valid: bool
    e164: Optional[str] = None
    korean: Optional[str] = None
    error: Optional[str] = None


def _strip(phone):
    return re.sub(r'[\s-]', '', phone.strip())


def is_valid_korean_phone(phone) -> bool:
    if not phone:
        return False
    return bool(_KOREAN_PHONE.match(re.sub(r'\s', '', phone.strip())))


def to_e164(phone) -> Optional[str]:
    """010-1234-5678 -> +821012345678. Returns None when the number is not valid."""
    if not phone or not isinstance(phone, str):
        return None
    clean = _strip(phone)

    if clean.startswith('+'):
        if clean.startswith('+' + KOREA_COUNTRY_CODE):
            national = clean[len(KOREA_COUNTRY_CODE) + 1:]
            if not national.startswith('0'):
                national = '0' + national
            return to_e164(national)
        return clean if _E164.match(clean) else None

    if not is_valid_korean_phone(clean):
        return None
    return f"+{KOREA_COUNTRY_CODE}{clean[1:]}"


def to_korean_format(e164) -> Optional[str]:
    """+821012345678 -> 010-1234-5678. Non-Korean numbers are returned unchanged."""
    if not e164 or not _E164.match(e164):
        return None
    if not e164.startswith('+' + KOREA_COUNTRY_CODE):
        return e164
    national = '0' + e164[len(KOREA_COUNTRY_CODE) + 1:]
    if len(national) == 11:
        return f"{national[:3]}-{national[3:7]}-{national[7:]}"
    if len(national) == 10:
        return f"{national[:3]}-{national[3:6]}-{national[6:]}"
    return national


def format_phone_input(phone) -> str:
    """Insert hyphens while the user types: 0101234 -> 010-1234."""
    digits = re.sub(r'\D', '', phone or '')[:11]
    if len(digits) <= 3:
        return digits
    if len(digits) <= 7:
        return f"{digits[:3]}-{digits[3:]}"
    return f"{digits[:3]}-{digits[3:7]}-{digits[7:]}"


def mask_phone(phone) -> str:
    """010-1234-5678 -> 010-****-5678"""
    korean = to_korean_format(to_e164(phone) or '')
    if not korean:
        return phone
    parts = korean.split('-')
    if len(parts) == 3:
        return f"{parts[0]}-{'*' * len(parts[1])}-{parts[2]}"
    return phone


def mask_email(email) -> str:
    """abcdef@example.com -> abc***@example.com"""
    if not email or '@' not in email:
        return email
    local, domain = email.split('@', 1)
    visible = local[:3] if len(local) > 3 else local[:1]
    return f"{visible}***@{domain}"


def validate_and_format_phone(phone) -> PhoneValidation:
    if not phone or not isinstance(phone, str) or not phone.strip():
        return PhoneValidation(valid=False, error=PHONE_REQUIRED_MSG)
    e164 = to_e164(phone)
    if not e164:
        return PhoneValidation(valid=False, error=PHONE_INVALID_MSG)
    return PhoneValidation(valid=True, e164=e164, korean=to_korean_format(e164))
