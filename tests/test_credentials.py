"""Unit tests for auth/credentials.py and the lookup side of auth/store.py.

Covers:
- identifier resolves against username or email (email case-insensitive)
- wrong password, unknown identifier and disabled account are indistinguishable
- bcrypt still runs for unknown identifiers (timing equalization)
- identifiers are unique across both namespaces combined
- usernames and emails are validated before they reach the directory
- directory failures propagate as DirectoryError
"""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from auth.credentials import CredentialVerifier
from auth.models import User
from auth.tokens import _DUMMY_HASH
from core.errors import DirectoryError, IdentifierTaken


def test_verify_by_username(user_store, alice, alice_password):
    user = CredentialVerifier(user_store).verify("alice", alice_password)
    assert user is not None
    assert user.id == alice.id


def test_verify_by_email_ignores_case(user_store, alice, alice_password):
    user = CredentialVerifier(user_store).verify("Alice@Example.com", alice_password)
    assert user is not None
    assert user.id == alice.id


def test_failures_are_indistinguishable(user_store, alice, alice_password, make_user):
    verifier = CredentialVerifier(user_store)
    make_user("mallory", "mallory@example.com", alice_password, is_active=False)
    assert verifier.verify("alice", "wrong password") is None
    assert verifier.verify("nobody", alice_password) is None
    assert verifier.verify("mallory", alice_password) is None


def test_unknown_identifier_still_runs_bcrypt(user_store):
    with patch("auth.credentials.verify_password", return_value=False) as mocked:
        assert CredentialVerifier(user_store).verify("ghost", "whatever") is None
    mocked.assert_called_once_with("whatever", _DUMMY_HASH)


def test_directory_failure_propagates():
    store = MagicMock()
    store.find_by_identifier.side_effect = DirectoryError("db down")
    with pytest.raises(DirectoryError):
        CredentialVerifier(store).verify("alice", "pw")


def test_identifier_taken_checks_both_namespaces(user_store, alice):
    assert user_store.identifier_taken("alice@example.com", "other@example.com")
    assert user_store.identifier_taken("bob", "alice")
    assert not user_store.identifier_taken("bob", "bob@example.com")


@pytest.mark.parametrize(
    "username,email",
    [
        ("alice@example.com", "other@example.com"),
        ("al", "al@example.com"),
        ("bob smith", "bob@example.com"),
        ("bob\n", "bob@example.com"),
        ("bob", "alice"),
        ("bob", "bob@localhost"),
    ],
)
def test_create_user_rejects_malformed_identifiers(user_store, username, email):
    with pytest.raises(ValueError):
        user_store.create_user(User(username=username, email=email, hashed_password="x"))
    assert user_store.find_by_identifier(email) is None


def test_duplicate_email_rejected_case_insensitively(alice, make_user):
    with pytest.raises(IdentifierTaken):
        make_user("alice2", "ALICE@example.com", "password123")


def test_find_by_identifier_returns_none_for_unknown(user_store):
    assert user_store.find_by_identifier("nobody") is None


def test_set_active_toggles_login(user_store, alice, alice_password):
    verifier = CredentialVerifier(user_store)
    assert user_store.set_active(alice.id, False)
    assert verifier.verify("alice", alice_password) is None
    assert user_store.set_active(alice.id, True)
    assert verifier.verify("alice", alice_password) is not None


def test_user_store_wraps_sqlalchemy_errors(user_store):
    user_store.close()
    user_store.engine = MagicMock()
    user_store.engine.connect.side_effect = OperationalError("SELECT", {}, Exception("gone"))
    with pytest.raises(DirectoryError):
        user_store.get_by_id(1)
    assert user_store.ping() is False


def test_created_user_round_trips(user_store):
    uid = user_store.create_user(User(username="carol", email="Carol@Example.com", hashed_password="x"))
    carol = user_store.get_by_id(uid)
    assert carol.username == "carol"
    assert carol.email == "carol@example.com"
    assert carol.is_active
    assert carol.created_at
