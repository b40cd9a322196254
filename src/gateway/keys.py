"""API key issuing, hashing and header parsing.

Raw keys look like ``jee_<random token>``. Only the SHA-256 hash and the
first 12 characters are stored; the raw key is returned once, when it
is issued, and cannot be recovered afterwards.
"""

import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from src.config import Settings
from src.storage.models import ApiKey
from src.webhooks.security import SecureRandom, SystemRandom

KEY_TOKEN_BYTES = 32
BEARER_SCHEME = "Bearer"


def hash_api_key(raw_key: str) -> str:
    """Hex SHA-256 of a raw key."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def key_lookup_prefix(raw_key: str, length: int = 12) -> str:
    return raw_key[:length]


def extract_api_key(header_value: str | None) -> str | None:
    """Pull the key out of ``Authorization: Bearer <key>`` or a plain key header.

    Args:
        header_value: Raw header value.

    Returns:
        The key, or None if the header is missing or blank.
    """
    if not header_value:
        return None
    value = header_value.strip()
    scheme, _, rest = value.partition(" ")
    if scheme == BEARER_SCHEME:
        value = rest.strip()
    return value or None


@dataclass(frozen=True)
class IssuedApiKey:
    """A freshly issued key. ``raw_key`` is only available here."""

    raw_key: str
    record: ApiKey

    def __repr__(self) -> str:
        return f"IssuedApiKey(key_prefix={self.record.key_prefix!r}, id={self.record.id!r})"


def issue_api_key(
    user_id: str,
    *,
    name: str = "",
    expires_in: timedelta | None = None,
    settings: Settings | None = None,
    random: SecureRandom | None = None,
) -> IssuedApiKey:
    """Generate a new read-only API key for a user.

    Args:
        user_id: Owner of the key.
        name: Human-readable label.
        expires_in: Optional lifetime.
        settings: Prefix configuration.
        random: Token source (defaults to the OS CSPRNG).

    Returns:
        The raw key together with the record to persist.
    """
    settings = settings or Settings()
    raw_key = f"{settings.API_KEY_PREFIX}{(random or SystemRandom()).token(KEY_TOKEN_BYTES)}"
    now = datetime.now(UTC)
    record = ApiKey(
        user_id=user_id,
        name=name,
        key_hash=hash_api_key(raw_key),
        key_prefix=key_lookup_prefix(raw_key, settings.API_KEY_LOOKUP_PREFIX_LENGTH),
        is_read_only=True,
        is_active=True,
        expires_at=now + expires_in if expires_in else None,
        created_at=now,
    )
    return IssuedApiKey(raw_key=raw_key, record=record)
