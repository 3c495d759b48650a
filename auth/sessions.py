"""
auth/sessions.py -- Session Manager: login, verify, refresh, logout.

Combines the CredentialVerifier, TokenCodec and SessionStore into one session
lifecycle. Holds no mutable session state of its own; everything lives in the
shared store, so any number of request handlers can call it concurrently.

States per identity, as seen through the store:

    NoSession       no access:/refresh: keys
    Active          both keys present, access token unexpired
    AccessExpired   refresh: key present, presented access token past exp
    Revoked         keys deleted (logout) or overwritten (newer login/refresh)

Single active session per identity: login and refresh overwrite the identity's
record, so the previous access token stops verifying and the previous refresh
artifact stops refreshing immediately.

Store availability, branched once per flow on `store.available` (and on a
StoreUnavailable raised mid-flow):

    login    degrades: the access token is still issued, nothing is persisted,
             no refresh artifact is returned. Revocation and rotation are not
             possible for that session. ALLOW_DEGRADED_LOGIN=false turns this
             into a StoreUnavailable (HTTP 503) instead.
    verify   degrades: accepts on signature + expiry alone.
    refresh  fails with StoreUnavailable. There is no way to find or rotate
             the record.
    logout   degrades: acknowledged without mutation.

Ordering: new artifacts are always minted before the store is touched, and the
store write is a single atomic step. A failure or timeout at the write leaves
the previous session record exactly as it was.
"""

from __future__ import annotations

import logging

from auth.credentials import CredentialVerifier
from auth.models import AuthResult, SessionGrant, TokenStatus, User
from auth.store import UserStore
from auth.tokens import TokenCodec, fingerprints_match, generate_refresh_artifact, hash_password
from cache.store import REFRESH_PREFIX, SessionStore, access_key, latest_access_key
from core.config import Settings
from core.errors import StoreUnavailable

logger = logging.getLogger("sessionwarden.sessions")


class SessionManager:
    """Orchestrates the session lifecycle for every identity.

    Usage:
        manager = SessionManager(settings, codec, store, user_store)
        result = manager.login("alice", "correct horse")
        if result.ok:
            manager.verify(result.grant.access_token)
    """

    def __init__(
        self,
        settings: Settings,
        codec: TokenCodec,
        store: SessionStore,
        users: UserStore,
        verifier: CredentialVerifier | None = None,
    ) -> None:
        self._codec = codec
        self._store = store
        self._users = users
        self._verifier = verifier or CredentialVerifier(users)
        self._access_ttl = settings.access_token_ttl_seconds
        self._refresh_ttl = settings.refresh_token_ttl_seconds
        self._allow_degraded_login = settings.allow_degraded_login
        self._refresh_lookup = settings.refresh_lookup

    @property
    def store(self) -> SessionStore:
        return self._store

    # ------------------------------------------------------------------
    # Login / signup
    # ------------------------------------------------------------------

    def login(self, identifier: str, secret: str) -> AuthResult:
        """Verify credentials and open a session, superseding any prior one.

        Raises DirectoryError if the user directory fails, and StoreUnavailable
        only when the store is down and degraded login is disabled.
        """
        user = self._verifier.verify(identifier, secret)
        if user is None:
            logger.info("Login rejected")
            return AuthResult.failure()
        return self._open_session(str(user.id))

    def register(self, username: str, email: str, password: str) -> AuthResult:
        """Create a user and open a session for it.

        Raises IdentifierTaken when the username or email exists in either
        namespace.
        """
        user_id = self._users.create_user(
            User(username=username, email=email, hashed_password=hash_password(password))
        )
        logger.info("User registered (id=%s)", user_id)
        return self._open_session(str(user_id))

    def _open_session(self, identity: str) -> AuthResult:
        access_token = self._codec.mint(identity, self._access_ttl)
        refresh_artifact = generate_refresh_artifact()

        if self._store.available:
            try:
                self._store.establish(
                    identity,
                    self._codec.fingerprint(access_token),
                    self._codec.fingerprint(refresh_artifact),
                    self._access_ttl,
                    self._refresh_ttl,
                )
            except StoreUnavailable:
                logger.warning("Session store failed during login for identity %s", identity)
            else:
                logger.info("Session established for identity %s", identity)
                return AuthResult.success(identity, self._grant(identity, access_token, refresh_artifact))

        if not self._allow_degraded_login:
            raise StoreUnavailable("Session store unavailable; cannot start a session.")
        logger.warning(
            "Session store unavailable: issuing stateless access token for identity %s "
            "(no revocation or refresh for this session)",
            identity,
        )
        return AuthResult.success(identity, self._grant(identity, access_token, None, degraded=True))

    def _grant(
        self, identity: str, access_token: str, refresh_artifact: str | None, degraded: bool = False
    ) -> SessionGrant:
        return SessionGrant(
            identity=identity,
            access_token=access_token,
            access_expires_in=self._access_ttl,
            refresh_artifact=refresh_artifact,
            refresh_expires_in=self._refresh_ttl if refresh_artifact else 0,
            degraded=degraded,
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, access_token: str) -> AuthResult:
        """Check signature, expiry, and (when possible) that the token is still current.

        A validly signed, unexpired token is still rejected when the store no
        longer holds its fingerprint: the session was logged out or superseded.
        """
        parsed = self._codec.parse(access_token)
        if parsed.status is TokenStatus.INVALID:
            return AuthResult.failure()
        if parsed.status is TokenStatus.EXPIRED:
            return AuthResult.failure(expired=True)

        identity = parsed.identity
        if not self._store.available:
            logger.warning("Session store unavailable: accepting token for identity %s on signature only", identity)
            return AuthResult.success(identity)
        try:
            stored = self._store.get(access_key(identity))
        except StoreUnavailable:
            logger.warning("Session store failed during verify: accepting token for identity %s on signature only", identity)
            return AuthResult.success(identity)

        if not fingerprints_match(stored, self._codec.fingerprint(access_token)):
            return AuthResult.failure()
        return AuthResult.success(identity)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_artifact: str) -> AuthResult:
        """Rotate the presented refresh artifact into a new access/refresh pair.

        The artifact is single use. Of two concurrent refreshes with the same
        artifact, exactly one wins the compare-and-swap; the other is rejected.

        Raises StoreUnavailable when the store cannot be reached.
        """
        if not refresh_artifact:
            return AuthResult.failure()
        if not self._store.available:
            raise StoreUnavailable("Session store unavailable; cannot refresh.")

        presented_fp = self._codec.fingerprint(refresh_artifact)
        identity = self._find_owner(presented_fp)
        if identity is None:
            logger.info("Refresh rejected: artifact unknown, expired, or already rotated")
            return AuthResult.failure()

        access_token = self._codec.mint(identity, self._access_ttl)
        new_artifact = generate_refresh_artifact()
        swapped = self._store.rotate(
            identity,
            presented_fp,
            self._codec.fingerprint(access_token),
            self._codec.fingerprint(new_artifact),
            self._access_ttl,
            self._refresh_ttl,
        )
        if not swapped:
            logger.warning("Refresh rejected for identity %s: artifact rotated concurrently", identity)
            return AuthResult.failure()

        logger.info("Session rotated for identity %s", identity)
        return AuthResult.success(identity, self._grant(identity, access_token, new_artifact))

    def _find_owner(self, refresh_fp: str) -> str | None:
        if self._refresh_lookup == "index":
            return self._store.owner_of(refresh_fp)
        # Linear in the number of live sessions.
        for key, value in self._store.scan(REFRESH_PREFIX):
            if fingerprints_match(value, refresh_fp):
                return key[len(REFRESH_PREFIX) :]
        return None

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, access_token: str | None = None, refresh_artifact: str | None = None) -> bool:
        """Revoke the session identified by either artifact.

        Always safe to call. Returns True if a session record was deleted,
        False when nothing could be resolved or the store is unavailable.
        """
        if not access_token and not refresh_artifact:
            return False
        if not self._store.available:
            logger.warning("Session store unavailable: logout acknowledged without revocation")
            return False
        try:
            identity = self._resolve_identity(access_token, refresh_artifact)
            if identity is None:
                return False
            revoked = self._store.revoke(identity)
        except StoreUnavailable:
            logger.warning("Session store failed during logout: acknowledged without revocation")
            return False
        logger.info("Session revoked for identity %s", identity)
        return revoked

    def _resolve_identity(self, access_token: str | None, refresh_artifact: str | None) -> str | None:
        """Find the identity whose *current* session one of the artifacts belongs to.

        An access token counts if its signature verifies (expiry is ignored so
        a client can still log out after the access token lapsed) and it is
        the latest one issued for a session that is still live. A stale token from a superseded session
        cannot log out the newer session.
        """
        if access_token:
            parsed = self._codec.parse(access_token)
            if parsed.status is not TokenStatus.INVALID:
                stored = self._store.get(latest_access_key(parsed.identity))
                if fingerprints_match(stored, self._codec.fingerprint(access_token)):
                    return parsed.identity
        if refresh_artifact:
            return self._find_owner(self._codec.fingerprint(refresh_artifact))
        return None
