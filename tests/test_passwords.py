import pytest
from argon2 import PasswordHasher, Type

from kvauth.service.errors import CredentialCheckError
from kvauth.service.passwords import CredentialVerifier


@pytest.fixture
def verifier():
    # Cheap parameters keep the suite fast; the algorithm stays argon2id
    return CredentialVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


def test_hash_is_argon2id(verifier):
    stored = verifier.hash("TestPassword123!")
    assert stored.startswith("$argon2id$")
    assert "TestPassword123!" not in stored


def test_matching_password(verifier):
    stored = verifier.hash("pw")
    assert verifier.verify("pw", stored) is True


def test_wrong_password_is_a_plain_mismatch(verifier):
    stored = verifier.hash("pw")
    assert verifier.verify("not-pw", stored) is False


def test_unreadable_hash_is_an_internal_error(verifier):
    with pytest.raises(CredentialCheckError):
        verifier.verify("pw", "definitely-not-a-hash")


def test_default_verifier_uses_argon2id():
    assert CredentialVerifier().algorithm == "argon2id"
