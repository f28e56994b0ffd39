"""
Opaque, URL-safe session tokens and the links that carry them.

Tokens are lookup keys only: 8 upper-case base-36 characters drawn from the
OS CSPRNG. There is nothing to decode.
"""

import secrets
from urllib.parse import quote

from core.exceptions import TokenGenerationError

TOKEN_LENGTH = 8
_RANDOM_BYTES = 6
_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_token() -> str:
    """Generate a new session token.

    Each random byte is rendered in base 36 and padded to two characters, the
    result is cut to eight characters and upper-cased. Raises
    TokenGenerationError when the platform has no secure random source.
    """
    try:
        raw = secrets.token_bytes(_RANDOM_BYTES)
    except NotImplementedError as e:
        raise TokenGenerationError("No secure random source available for token generation") from e

    encoded = "".join(_to_base36(b).rjust(2, "0") for b in raw)
    return encoded[:TOKEN_LENGTH].upper()


def build_link(token: str, base_origin: str) -> str:
    """Public survey URL for a token."""
    return f"{base_origin.rstrip('/')}/survey/{token}"


def build_qr_code_url(data: str, size: int = 200) -> str:
    """Image URL of a QR code encoding `data` (rendered by an external service)."""
    return f"https://api.qrserver.com/v1/create-qr-code/?size={size}x{size}&data={quote(data, safe='')}"
