import re
import secrets
from typing import Any, Optional

from school_library.errors import ValidationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_GRADE = 0
MAX_GRADE = 12
MIN_PASSWORD_LENGTH = 6
# bcrypt only hashes the first 72 bytes
MAX_PASSWORD_BYTES = 72


class EmailValidator:
    """E-mail checks and the name-derived school address used for onboarding."""

    @staticmethod
    def normalize_email(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return raw.strip().lower()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(_EMAIL_RE.match(email.strip()))

    @staticmethod
    def derive_email(name: str, domain: str) -> str:
        # "Priya Sharma" -> priya.sharma@<domain>
        local = re.sub(r"\s+", ".", name.strip()).lower()
        local = re.sub(r"[^a-z0-9._-]", "", local)
        return f"{local}@{domain}"


class TextValidator:
    """Basic text validations and sanitization."""

    @staticmethod
    def is_blank(text: Optional[str]) -> bool:
        return text is None or not str(text).strip()

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # strip HTML tags; messages are rendered by the web client
        cleaned = re.sub(r"<[^>]*>", "", text)
        return cleaned.strip()


class NumberValidator:
    """Coercion for the loosely typed numeric fields the web forms post."""

    @staticmethod
    def parse_optional_int(value: Any, field_name: str) -> Optional[int]:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if isinstance(value, bool):
            raise ValidationError(f"{field_name} must be a whole number", [field_name])
        try:
            return int(str(value).strip())
        except ValueError as e:
            raise ValidationError(f"{field_name} must be a whole number", [field_name]) from e

    @staticmethod
    def parse_grade(value: Any) -> Optional[int]:
        grade = NumberValidator.parse_optional_int(value, "grade")
        if grade is not None and not MIN_GRADE <= grade <= MAX_GRADE:
            raise ValidationError(f"grade must be between {MIN_GRADE} and {MAX_GRADE}", ["grade"])
        return grade

    @staticmethod
    def parse_non_negative(value: Any, field_name: str) -> int:
        number = NumberValidator.parse_optional_int(value, field_name)
        if number is None:
            raise ValidationError(f"{field_name} is required", [field_name])
        if number < 0:
            raise ValidationError(f"{field_name} must not be negative", [field_name])
        return number


class PasswordValidator:

    @staticmethod
    def is_acceptable(password: Optional[str]) -> bool:
        return (
            password is not None
            and len(password) >= MIN_PASSWORD_LENGTH
            and len(password.encode("utf-8")) <= MAX_PASSWORD_BYTES
        )

    @staticmethod
    def generate(length: int = 12) -> str:
        return secrets.token_urlsafe(length)[:max(length, MIN_PASSWORD_LENGTH)]
