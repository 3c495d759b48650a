"""
core/errors.py -- Exception taxonomy shared by every layer.

Only ConfigurationError, StoreUnavailable, DirectoryError and IdentifierTaken
are ever raised across the SessionManager boundary. Authentication outcomes
(bad password, bad token, unknown refresh artifact) are returned as typed
results instead, see auth/models.py. AuthenticationFailure is raised by the
request dependencies in auth/dependencies.py and mapped to HTTP 401 in
api/main.py.
"""


class ServiceError(Exception):
    """Base class for all SessionWarden errors."""


class ConfigurationError(ServiceError):
    """Missing or unsafe configuration. Fatal at startup."""


class AuthenticationFailure(ServiceError):
    """Credentials or tokens were rejected.

    Deliberately carries no detail about which check failed. The message is
    the same for every cause.
    """

    def __init__(self, expired: bool = False) -> None:
        super().__init__("Authentication failed.")
        self.expired = expired


class StoreUnavailable(ServiceError):
    """The session cache cannot be reached.

    Verification and logout degrade when they see this. Flows that must
    persist new state (refresh, and login when degraded login is disabled)
    report it to the caller as a transient failure.
    """


class DirectoryError(ServiceError):
    """The user directory (SQL backing store) failed.

    Reported to the caller as a generic server error. Never retried inside
    the same request.
    """


class IdentifierTaken(ServiceError):
    """Signup attempted with a username or email that already exists."""
