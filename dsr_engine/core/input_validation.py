"""Input validation utilities for data subject input.

Requests arrive from unauthenticated data subjects, so every contact value
and free-text field is validated before it reaches verification, storage
or the audit ledger.

Validation philosophy:
- Whitelist allowed patterns (explicit allow)
- Fail closed (reject on ambiguity)
- Normalize before validation (strip, lowercase, etc.)
"""

from __future__ import annotations

import re
import uuid

import structlog

log = structlog.get_logger(__name__)

MAX_EMAIL_LENGTH = 254
MAX_NAME_LENGTH = 100
MAX_ADDRESS_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 2_000

_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9\-]+(\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}$")
# E.164 after normalization: optional +, 7-15 digits
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{7,15}$")
_PHONE_STRIP = re.compile(r"[\s\-().]")
_NAME_PATTERN = re.compile(r"^[^\d<>{}\[\]\\/@#$%^*=_|~`]+$")


class ValidationError(ValueError):
    """Raised when input validation fails.

    This is a ValueError subclass to maintain compatibility with
    FastAPI's automatic validation error handling.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class InputValidator:
    """Validates and normalizes data subject input.

    All methods are static to allow use without instantiation. Each
    validator returns the normalized value or raises ValidationError.

    Usage:
        email = InputValidator.validate_email(raw_email)
    """

    @staticmethod
    def _clean(value: str) -> str:
        return value.strip().replace("\x00", "")

    @staticmethod
    def validate_email(email: str, field: str = "email") -> str:
        """Validate and lowercase an email address."""
        if not isinstance(email, str):
            raise ValidationError("Email must be a string", field)

        sanitized = InputValidator._clean(email).lower()
        if not sanitized:
            raise ValidationError("Email cannot be empty", field)
        if len(sanitized) > MAX_EMAIL_LENGTH:
            raise ValidationError(f"Email too long. Maximum {MAX_EMAIL_LENGTH} characters allowed.", field)
        if ".." in sanitized or not _EMAIL_PATTERN.match(sanitized):
            raise ValidationError("Invalid email format", field)
        return sanitized

    @staticmethod
    def normalize_phone(phone: str) -> str:
        """Strip formatting characters from a phone number."""
        return _PHONE_STRIP.sub("", InputValidator._clean(phone))

    @staticmethod
    def validate_phone(phone: str, field: str = "phone") -> str:
        """Validate a phone number and return it in normalized form."""
        if not isinstance(phone, str):
            raise ValidationError("Phone must be a string", field)

        normalized = InputValidator.normalize_phone(phone)
        if not _PHONE_PATTERN.match(normalized):
            raise ValidationError("Invalid phone number format", field)
        return normalized

    @staticmethod
    def validate_name(name: str, field: str = "name") -> str:
        """Validate a personal name (letters, spaces, apostrophes, hyphens)."""
        if not isinstance(name, str):
            raise ValidationError("Name must be a string", field)

        sanitized = InputValidator._clean(name)
        if not sanitized:
            raise ValidationError("Name cannot be empty", field)
        if len(sanitized) > MAX_NAME_LENGTH:
            raise ValidationError(f"Name too long. Maximum {MAX_NAME_LENGTH} characters allowed.", field)
        if not _NAME_PATTERN.match(sanitized):
            raise ValidationError("Name contains disallowed characters", field)
        return sanitized

    @staticmethod
    def validate_text(value: str, field: str, max_length: int = MAX_DESCRIPTION_LENGTH) -> str:
        """Free text: strip control characters and enforce a maximum length."""
        if not isinstance(value, str):
            raise ValidationError(f"{field} must be a string", field)

        sanitized = InputValidator._clean(value)
        sanitized = "".join(char for char in sanitized if ord(char) >= 32 or char in "\t\n")
        if len(sanitized) > max_length:
            raise ValidationError(f"{field} too long. Maximum {max_length} characters allowed.", field)
        return sanitized

    @staticmethod
    def validate_uuid(value: str) -> uuid.UUID:
        """Validate UUID format."""
        if not isinstance(value, str):
            raise ValidationError("UUID must be a string")

        try:
            parsed = uuid.UUID(value)
        except ValueError as exc:
            raise ValidationError(f"Invalid UUID format: {exc}") from exc

        return parsed
