"""Unit tests for auth/passwords.py.

Covers:
- bcrypt hash/verify round trip and salting
- verify_password never raises on a corrupt hash
- Email normalization and validation
- PasswordPolicy: each rule reports its own message; bcrypt's 72-byte limit
"""

from __future__ import annotations

import pytest

from auth.errors import InvalidInput
from auth.passwords import PasswordPolicy, hash_password, normalize_email, validate_email, verify_password


class TestHashing:
    def test_verify_accepts_matching_password(self) -> None:
        hashed = hash_password("Tr0ub4dor&3")
        assert verify_password("Tr0ub4dor&3", hashed)

    def test_verify_rejects_wrong_password(self) -> None:
        hashed = hash_password("Tr0ub4dor&3")
        assert not verify_password("tr0ub4dor&3", hashed)

    def test_same_password_hashes_differently(self) -> None:
        assert hash_password("Tr0ub4dor&3") != hash_password("Tr0ub4dor&3")

    def test_hash_is_not_plaintext(self) -> None:
        assert "Tr0ub4dor" not in hash_password("Tr0ub4dor&3")

    def test_corrupt_hash_returns_false(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestEmail:
    def test_normalize_trims_and_lowercases(self) -> None:
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    def test_validate_returns_normalized(self) -> None:
        assert validate_email(" Bob@Example.org") == "bob@example.org"

    @pytest.mark.parametrize("email", ["", "plainaddress", "a@b", "a@b.c", "@example.com", "a b@example.com"])
    def test_invalid_emails_raise(self, email: str) -> None:
        with pytest.raises(InvalidInput):
            validate_email(email)

    def test_overlong_email_raises(self) -> None:
        with pytest.raises(InvalidInput):
            validate_email("a" * 250 + "@example.com")


class TestPasswordPolicy:
    def test_default_policy_accepts_letters_and_digits(self) -> None:
        PasswordPolicy().validate("abcdefg1")

    @pytest.mark.parametrize(
        "password, fragment",
        [
            ("", "empty"),
            ("abc1", "at least 8"),
            ("abcdefgh", "digit"),
            ("12345678", "letter"),
        ],
    )
    def test_default_policy_rejections(self, password: str, fragment: str) -> None:
        with pytest.raises(InvalidInput, match=fragment):
            PasswordPolicy().validate(password)

    def test_max_length(self) -> None:
        policy = PasswordPolicy(max_length=20)
        with pytest.raises(InvalidInput, match="more than 20"):
            policy.validate("a1" * 11)

    def test_more_than_72_bytes_is_rejected(self) -> None:
        # 40 two-byte characters: under max_length, over bcrypt's limit
        with pytest.raises(InvalidInput, match="72 bytes"):
            PasswordPolicy().validate("é" * 40 + "1")

    def test_symbol_rule_is_opt_in(self) -> None:
        PasswordPolicy().validate("abcdefg1")
        with pytest.raises(InvalidInput, match="symbol"):
            PasswordPolicy(require_symbol=True).validate("abcdefg1")
        PasswordPolicy(require_symbol=True).validate("abcdefg1!")

    def test_rules_can_be_disabled(self) -> None:
        PasswordPolicy(require_letter=False, require_digit=False, min_length=4).validate("    ")
