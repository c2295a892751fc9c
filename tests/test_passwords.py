import pytest
from argon2 import PasswordHasher

from clinauth.service.errors import InvalidEmail, WeakPassword
from clinauth.service.passwords import (
    MAX_PASSWORD_LENGTH,
    Argon2Hasher,
    PasswordPolicy,
    validate_email,
)


@pytest.fixture
def hasher():
    return Argon2Hasher(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


class TestHasher:
    def test_hash_is_salted_argon2id(self, hasher):
        first = hasher.hash("Str0ng!Passw0rd")
        second = hasher.hash("Str0ng!Passw0rd")

        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_matches_only_the_original_password(self, hasher):
        digest = hasher.hash("Str0ng!Passw0rd")

        assert hasher.verify("Str0ng!Passw0rd", digest)
        assert not hasher.verify("str0ng!Passw0rd", digest)

    def test_garbage_digest_verifies_false(self, hasher):
        assert not hasher.verify("Str0ng!Passw0rd", "not-a-hash")


class TestPasswordPolicy:
    def test_strong_password_passes(self):
        PasswordPolicy().validate("Str0ng!Passw0rd")

    @pytest.mark.parametrize(
        "password,missing",
        [
            ("Sh0rt!", "min_length:8"),
            ("alllower1!", "uppercase"),
            ("ALLUPPER1!", "lowercase"),
            ("NoDigits!!", "digit"),
            ("NoSpecial12", "special"),
        ],
    )
    def test_each_requirement_is_reported(self, password, missing):
        with pytest.raises(WeakPassword) as exc_info:
            PasswordPolicy().validate(password)

        assert missing in exc_info.value.detail["requirements"]
        assert exc_info.value.detail["field"] == "password"

    def test_requirements_are_configurable(self):
        policy = PasswordPolicy(
            min_length=4,
            require_upper=False,
            require_digit=False,
            require_special=False,
        )

        policy.validate("abcd")

    def test_overlong_password_is_rejected(self):
        with pytest.raises(WeakPassword):
            PasswordPolicy().validate("Aa1!" * (MAX_PASSWORD_LENGTH // 4 + 1))


class TestEmailValidation:
    def test_address_is_normalized(self):
        assert validate_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize(
        "email", ["", "alice", "alice@", "@example.com", "alice@example", "a b@example.com"]
    )
    def test_malformed_addresses_are_rejected(self, email):
        with pytest.raises(InvalidEmail) as exc_info:
            validate_email(email)

        assert exc_info.value.detail == {"field": "email"}
