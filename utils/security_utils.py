"""
Input validation for account credentials
"""
import re

MIN_PASSWORD_LENGTH = 8

# Deliberately loose: one "@", no spaces, a dot in the domain
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> str:
    """
    Return the normalized email address.

    Raises:
        ValueError: If the address is empty or malformed
    """
    email = normalize_email(email)
    if not email:
        raise ValueError("Email cannot be empty")
    if len(email) > 255 or not _EMAIL_RE.match(email):
        raise ValueError("Invalid email address")
    return email


def validate_password_strength(password: str) -> None:
    """
    Validate password strength according to security requirements.

    Enforces:
    - Minimum length: 8 characters
    - At least one letter and at least one digit

    Args:
        password: Password string to validate

    Raises:
        ValueError: If password does not meet strength requirements
    """
    if not password:
        raise ValueError("Password cannot be empty")

    # Check minimum length
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    # Check for letter
    if not re.search(r'[A-Za-z]', password):
        raise ValueError("Password must contain at least one letter")

    # Check for digit
    if not re.search(r'[0-9]', password):
        raise ValueError("Password must contain at least one digit (0-9)")
