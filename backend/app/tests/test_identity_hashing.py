"""Unit tests for customer identity hashing.

WHAT:
    Normalization + SHA256 of customer fields into Meta user_data keys.

WHY:
    A hash over a non-normalized value never matches a Meta user, and the
    failure is silent.

REFERENCES:
    - app/services/identity_hashing.py (module under test)
"""

import hashlib

from app.schemas import CustomerFields
from app.services.identity_hashing import (
    hash_identity,
    normalize_value,
    sha256_hash,
    split_full_name,
)


def _sha(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class TestNormalization:
    """Test per-field normalization rules."""

    def test_email_is_trimmed_and_lowercased(self):
        assert normalize_value("email", "  Test@Example.COM ") == "test@example.com"

    def test_phone_keeps_digits_only(self):
        """WHAT: "+", spaces, dashes and parentheses are stripped.
        WHY: Meta expects country code + number, digits only.
        """
        assert normalize_value("phone", "+55 (11) 98765-4321") == "5511987654321"

    def test_blank_values_normalize_to_none(self):
        assert normalize_value("first_name", "   ") is None
        assert normalize_value("phone", "+-") is None
        assert normalize_value("email", None) is None


class TestHashIdentity:
    """Test hashing into Meta user_data keys."""

    def test_sha256_is_lowercase_hex(self):
        digest = sha256_hash("test@example.com")
        assert digest == _sha("test@example.com")
        assert len(digest) == 64
        assert digest == digest.lower()

    def test_hashes_normalized_email_and_phone(self):
        identity = hash_identity(CustomerFields(email=" Test@Example.com", phone="+55 11 98765-4321"))

        assert identity.em == _sha("test@example.com")
        assert identity.ph == _sha("5511987654321")

    def test_absent_fields_are_omitted(self):
        """WHAT: Only present fields produce keys.
        WHY: Hashes of empty placeholders pollute Meta's matching.
        """
        identity = hash_identity(CustomerFields(email="a@b.com", last_name="   "))
        dumped = identity.model_dump(exclude_none=True)

        assert set(dumped) == {"em"}

    def test_all_fields_map_to_meta_keys(self):
        identity = hash_identity(CustomerFields(
            email="a@b.com",
            phone="11999990000",
            first_name="Maria",
            last_name="Silva",
            date_of_birth="19900101",
            gender="f",
            city="Sao Paulo",
            state="SP",
            zip_code="01310100",
            country="BR",
        ))

        assert set(identity.model_dump(exclude_none=True)) == {
            "em", "ph", "fn", "ln", "db", "ge", "ct", "st", "zp", "country",
        }
        assert identity.fn == _sha("maria")
        assert identity.country == _sha("br")

    def test_hashing_disabled_passes_normalized_values(self):
        identity = hash_identity(CustomerFields(email="A@B.com"), hashing_enabled=False)
        assert identity.em == "a@b.com"

    def test_none_fields_give_empty_identity(self):
        assert hash_identity(None).model_dump(exclude_none=True) == {}


class TestSplitFullName:
    """Test splitting a single name field into first/last."""

    def test_first_word_is_first_name(self):
        assert split_full_name("Maria da Silva") == ("Maria", "da Silva")

    def test_single_word_has_no_last_name(self):
        assert split_full_name("Maria") == ("Maria", None)

    def test_blank_name(self):
        assert split_full_name("   ") == (None, None)
        assert split_full_name(None) == (None, None)
