"""
Security module for Cardgate.

Provides input validation, sanitization, and security utilities.
"""

import re
import uuid
from typing import Any, Dict, Optional, List


# ============================================================
# Input Validation
# ============================================================

# Regex patterns for validation
CARD_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{22}$')
READER_ID_PATTERN = re.compile(r'^[A-Za-z0-9_.:-]{1,64}$')
DECIMAL_PATTERN = re.compile(r'^[0-9]{1,20}$')


class ValidationError(Exception):
    """Raised when input validation fails."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def validate_card_id(value: Any) -> str:
    """
    Validate a card ID (base64url of 16 bytes, 22 characters, no padding).

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str) or not CARD_ID_PATTERN.match(value):
        raise ValidationError("cardId", "must be a 22 character base64url string")
    return value


def validate_reader_id(value: Any) -> str:
    """Validate a reader ID (1-64 characters from a restricted alphabet)."""
    if not isinstance(value, str) or not READER_ID_PATTERN.match(value):
        raise ValidationError("readerId", "invalid format")
    return value


def validate_string_length(
    value: str,
    field_name: str,
    min_length: int = 1,
    max_length: int = 1000
) -> str:
    """
    Validate string length.

    Args:
        value: The string to validate
        field_name: Name of the field (for error messages)
        min_length: Minimum allowed length
        max_length: Maximum allowed length

    Returns:
        The validated string

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")

    if len(value.strip()) < min_length:
        raise ValidationError(field_name, f"must be at least {min_length} characters")

    if len(value) > max_length:
        raise ValidationError(field_name, f"must not exceed {max_length} characters")

    return value


def validate_owner(value: Any) -> str:
    owner = validate_string_length(value, "owner", max_length=100)
    if ":" in owner:
        # The opaque QR token uses ':' as its field separator
        raise ValidationError("owner", "must not contain ':'")
    return owner.strip()


def parse_counter(value: Any, max_value: int) -> Optional[int]:
    """
    Parse a claimed counter from its wire form.

    Accepts a JSON integer or a decimal string. Returns None for anything
    else, including booleans, negatives and values above max_value.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        ctr = value
    elif isinstance(value, str) and DECIMAL_PATTERN.match(value.strip()):
        ctr = int(value.strip())
    else:
        return None
    if ctr < 0 or ctr > max_value:
        return None
    return ctr


# ============================================================
# Request ID Generation
# ============================================================

def generate_request_id() -> str:
    """Generate a unique request ID for audit trail correlation."""
    return str(uuid.uuid4())


# ============================================================
# Client Identification
# ============================================================

def extract_client_ip(headers: Dict[str, str], peer: Optional[str] = None) -> Optional[str]:
    """Client IP from X-Forwarded-For (first hop), falling back to the peer address."""
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(',')[0].strip()[:45]
    return peer


def extract_client_id(headers: Dict[str, str], peer: Optional[str] = None) -> str:
    """
    Extract a client identifier from request headers for rate limiting.
    Falls back to a default if no identifier is found.
    """
    reader_id = headers.get("x-reader-id", "")
    if reader_id:
        return f"reader:{reader_id[:64]}"

    ip = extract_client_ip(headers, peer)
    if ip:
        return f"ip:{ip}"

    return "anonymous"


def truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]


# ============================================================
# Audit Logging Helpers
# ============================================================

def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: List[str] = None) -> Dict[str, Any]:
    """
    Sanitize data for logging by masking sensitive fields.

    Args:
        data: The data to sanitize
        sensitive_fields: List of field names to mask

    Returns:
        Sanitized copy of the data
    """
    if sensitive_fields is None:
        sensitive_fields = ["secret", "secret_b64", "tag", "signature", "token", "admin_key"]

    result = {}
    for key, value in data.items():
        if key in sensitive_fields:
            if isinstance(value, str) and len(value) > 8:
                result[key] = value[:4] + "..." + value[-4:]
            else:
                result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = sanitize_for_logging(value, sensitive_fields)
        elif isinstance(value, list):
            result[key] = [
                sanitize_for_logging(item, sensitive_fields) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value

    return result
