#!/usr/bin/env python3
"""Error types raised by the secret store client.

Every runtime condition the client can report derives from SafeError, so the
command layer can print it and exit non-zero. Absence of a secret or key
derives from NotFoundError, which `--force` style callers may tolerate.
"""

from typing import Optional


class SafeError(Exception):
    """Base class for all client errors."""


class NotFoundError(SafeError):
    """Something the caller addressed does not exist."""


class SecretNotFound(NotFoundError):
    """No secret exists at the given path."""

    def __init__(self, path: str, message: Optional[str] = None):
        self.path = path
        super().__init__(message or f"no secret exists at path `{path}`")


class SecretDeleted(SecretNotFound):
    """The addressed version is soft-deleted."""

    def __init__(self, path: str):
        super().__init__(path, f"`{path}' is deleted")


class SecretDestroyed(SecretNotFound):
    """The addressed version is destroyed or has left the retention window."""

    def __init__(self, path: str, message: Optional[str] = None):
        super().__init__(path, message or f"`{path}' is destroyed")


class VersionNotYetExist(SecretNotFound):
    """The addressed version is newer than the newest recorded version."""

    def __init__(self, path: str):
        super().__init__(path, f"`{path}' references a version that does not yet exist")


class NoSatisfyingVersion(SecretNotFound):
    """No retained version is in the required state."""

    def __init__(self, path: str, include_deleted: bool):
        if include_deleted:
            message = f"No living or deleted versions for `{path}'"
        else:
            message = f"No living versions for `{path}'"
        super().__init__(path, message)


class KeyNotFound(NotFoundError):
    """The secret exists but does not hold the given key."""

    def __init__(self, path: str, key: str):
        self.path = path
        self.key = key
        super().__init__(f"no key `{key}` exists in secret `{path}`")


class NotASecret(SafeError):
    """The path names a folder, not a secret.

    Not a NotFoundError: `--force` does not suppress it.
    """

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"`{path}' points to a folder, not a secret")


class AmbiguousOperation(SafeError):
    """The request cannot be mapped onto a single well-defined mutation."""


class InvalidAddress(SafeError):
    """An address string could not be parsed."""


class UnsupportedMountVersion(SafeError):
    """The mount's KV version does not support the operation."""

    def __init__(self, version, operation: Optional[str] = None):
        self.version = version
        if operation:
            super().__init__(f"{operation} is not supported on a v{version} mount")
        else:
            super().__init__(f"Unsupported mount version: {version}")


class BackendError(SafeError):
    """The store refused the request for a reason of its own."""


class StoreLocked(SafeError):
    """No key is available to open the store."""


class ExportFormatError(SafeError):
    """An import payload is in neither known export format."""
