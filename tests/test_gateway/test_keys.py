"""Tests for API key issuing and parsing."""

import hashlib
from datetime import timedelta

from src.config import Settings
from src.gateway.keys import (
    IssuedApiKey,
    extract_api_key,
    hash_api_key,
    issue_api_key,
    key_lookup_prefix,
)


class FixedRandom:
    def uuid(self) -> str:
        return "00000000-0000-0000-0000-000000000000"

    def token(self, nbytes: int) -> str:
        return "A" * 43


class TestHashing:
    """Tests for key hashing and prefixes."""

    def test_hash_is_sha256_hex(self):
        """Test that the stored hash is hex SHA-256."""
        assert hash_api_key("jee_abc") == hashlib.sha256(b"jee_abc").hexdigest()

    def test_lookup_prefix(self):
        """Test that the first 12 characters are used."""
        assert key_lookup_prefix("jee_abcdefghijklmnop") == "jee_abcdefgh"


class TestExtractApiKey:
    """Tests for header parsing."""

    def test_bearer(self):
        """Test the Authorization bearer form."""
        assert extract_api_key("Bearer jee_abc") == "jee_abc"

    def test_plain(self):
        """Test a bare key header."""
        assert extract_api_key("jee_abc") == "jee_abc"

    def test_missing(self):
        """Test missing or blank headers."""
        assert extract_api_key(None) is None
        assert extract_api_key("") is None
        assert extract_api_key("Bearer   ") is None

    def test_bearer_without_token(self):
        """Test that a bare scheme is treated as a missing key."""
        assert extract_api_key("Bearer") is None
        assert extract_api_key("  Bearer ") is None

    def test_bearer_extra_whitespace(self):
        """Test that padding around the token is ignored."""
        assert extract_api_key("  Bearer   jee_abc  ") == "jee_abc"


class TestIssueApiKey:
    """Tests for issue_api_key."""

    def test_issued_key_shape(self):
        """Test the raw key format and stored fields."""
        issued = issue_api_key("user-1", name="Zapier", random=FixedRandom())

        assert isinstance(issued, IssuedApiKey)
        assert issued.raw_key == "jee_" + "A" * 43
        assert issued.record.user_id == "user-1"
        assert issued.record.name == "Zapier"
        assert issued.record.key_hash == hash_api_key(issued.raw_key)
        assert issued.record.key_prefix == issued.raw_key[:12]
        assert issued.record.is_read_only is True
        assert issued.record.is_active is True
        assert issued.record.expires_at is None

    def test_real_keys_are_unique(self):
        """Test that the default random source yields distinct keys."""
        first = issue_api_key("user-1")
        second = issue_api_key("user-1")

        assert first.raw_key != second.raw_key
        assert first.raw_key.startswith("jee_")
        assert len(first.raw_key) == 4 + 43

    def test_expiry(self):
        """Test that a lifetime sets expires_at."""
        issued = issue_api_key("user-1", expires_in=timedelta(days=30))

        assert issued.record.expires_at - issued.record.created_at == timedelta(days=30)

    def test_custom_prefix(self):
        """Test that the configured prefix is used."""
        issued = issue_api_key(
            "user-1", settings=Settings(API_KEY_PREFIX="test_"), random=FixedRandom()
        )

        assert issued.raw_key.startswith("test_")

    def test_repr_hides_raw_key(self):
        """Test that the raw key and hash never appear in repr."""
        issued = issue_api_key("user-1", random=FixedRandom())

        assert issued.raw_key not in repr(issued)
        assert issued.record.key_hash not in repr(issued.record)
