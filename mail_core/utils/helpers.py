"""
Helper utility functions
"""
import re
from email.utils import parseaddr


def validate_email(email: str) -> bool:
    """Validate email address format"""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return bool(re.match(pattern, email))


def parse_email_address(email_string: str) -> tuple[str, str]:
    """Parse email address string into (name, email) tuple"""
    name, email = parseaddr(email_string)
    return name, email


def is_well_formed_recipient(value: str) -> bool:
    """Check a recipient written as either 'addr' or 'Name <addr>'."""
    if not value or not value.strip():
        return False
    _, address = parse_email_address(value.strip())
    return bool(address) and validate_email(address)


def truncate_text(text: str, max_length: int = 50) -> str:
    """Truncate text to max length with ellipsis"""
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


def address_domain(address: str) -> str:
    """Return the domain part of an address, or 'localhost' if it has none."""
    _, email = parse_email_address(address)
    if "@" in email:
        return email.rsplit("@", 1)[1]
    return "localhost"
