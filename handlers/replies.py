"""
handlers/replies.py
--------------------
Reply text shared by handlers.
"""

from errors import BillingError, ValidationError


def format_error(error: BillingError) -> str:
    """Turn a domain error into a reply: message, code and any listed problems."""
    text = f"⚠️ {error.message} [{error.code}]"
    if isinstance(error, ValidationError) and error.errors != [error.message]:
        text += "\n" + "\n".join(f"  • {e}" for e in error.errors)
    return text


def parse_int(value: str):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
