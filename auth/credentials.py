"""
auth/credentials.py -- Credential Verifier.

Given an identifier (username or email) and a plaintext secret, confirm a
match against the stored bcrypt hash. Stateless and read-only.

Timing equalization:
  bcrypt runs whether or not the identifier exists. An unknown identifier is
  checked against _DUMMY_HASH at the same cost factor, so response time does
  not reveal which identifiers are registered. Unknown identifier, wrong
  secret, and disabled account all produce the same None.

DirectoryError from the user store propagates unchanged. That is a server
fault, not an authentication outcome.
"""

from __future__ import annotations

from auth.models import User
from auth.store import UserStore
from auth.tokens import _DUMMY_HASH, verify_password


class CredentialVerifier:
    def __init__(self, user_store: UserStore) -> None:
        self._users = user_store

    def verify(self, identifier: str, plaintext: str) -> User | None:
        """Return the matching active User, or None on any failure."""
        user = self._users.find_by_identifier(identifier)
        if user is None or not user.hashed_password:
            # Equalize timing -- do NOT return early before running bcrypt
            verify_password(plaintext, _DUMMY_HASH)
            return None
        if not verify_password(plaintext, user.hashed_password):
            return None
        if not user.is_active:
            return None
        return user
