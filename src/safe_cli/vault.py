#!/usr/bin/env python3
"""Vault - address-aware access to a secret store and version-state checks.

A Vault wraps one backend client explicitly; nothing here reads a global
"current target". Addresses use the `path[:key][^version]` form from paths.py.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

from .errors import (
    AmbiguousOperation,
    KeyNotFound,
    NoSatisfyingVersion,
    NotASecret,
    SecretDeleted,
    SecretDestroyed,
    SecretNotFound,
    UnsupportedMountVersion,
    VersionNotYetExist,
)
from .paths import canonicalize, encode_path, parse_path
from .secret import Secret
from .store import VersionRecord


class RequiredState(Enum):
    """State a version must be in for an operation to address it."""

    ALIVE = "alive"
    ALIVE_OR_DELETED = "alive-or-deleted"


@dataclass
class VerifyOpts:
    any_version: bool = False
    state: RequiredState = RequiredState.ALIVE


class Vault:
    """Secret reads, writes and state checks against one backend client."""

    def __init__(self, client):
        """Initialize with a backend client.

        Args:
            client: Object providing read/write/list/delete/undelete/destroy/
                destroy_all/versions/mount_version/mount_path (see store.SecretStore)

        """
        self.client = client
        self._mount_versions: Dict[str, int] = {}

    def mount_version(self, path: str) -> int:
        path = canonicalize(path)
        if path not in self._mount_versions:
            self._mount_versions[path] = self.client.mount_version(path)
        return self._mount_versions[path]

    def mount_path(self, path: str) -> str:
        return self.client.mount_path(canonicalize(path))

    def is_mounted(self, path: str) -> bool:
        return self.client.is_mounted(canonicalize(path))

    def versions(self, path: str) -> List[VersionRecord]:
        return self.client.versions(canonicalize(path))

    def read(self, address: str) -> Secret:
        """Read the secret (or single key) an address points at.

        Raises:
            SecretNotFound: If there is no readable secret at the path/version
            KeyNotFound: If the address names a key the secret lacks

        """
        path, key, version = parse_path(address)
        path = canonicalize(path)
        raw = self.client.read(path, version)

        if key:
            if key not in raw:
                raise KeyNotFound(path, key)
            raw = {key: raw[key]}

        return Secret(raw)

    def write(self, address: str, secret: Secret) -> int:
        """Write a secret as the new latest version of `address`.

        An empty secret removes whatever is stored at the path instead.

        Raises:
            AmbiguousOperation: If the address carries a key or version

        """
        path, key, version = parse_path(address)
        if key:
            raise AmbiguousOperation("cannot write to paths in /path:key notation")
        if version:
            raise AmbiguousOperation("cannot write to paths in /path^version notation")

        path = canonicalize(path)
        if secret.empty():
            # Soft-deletes the latest version; v1 paths are removed outright
            if self.exists(path):
                self.client.delete(path)
            return 0

        return self.client.write(path, secret.to_dict())

    def list(self, path: str) -> List[str]:
        return self.client.list(canonicalize(path))

    def exists(self, address: str) -> bool:
        try:
            self.read(address)
        except (SecretNotFound, KeyNotFound):
            return False
        return True

    def err_if_folder(self, path: str) -> None:
        """Raise NotASecret if anything is listed beneath `path`."""
        path = canonicalize(path)
        try:
            self.list(path)
        except SecretNotFound:
            return
        raise NotASecret(path)

    def verify_secret_exists(self, address: str) -> None:
        try:
            self.read(address)
        except SecretNotFound:
            self.err_if_folder(parse_path(address)[0])
            raise

    def verify_secret_state(self, address: str, opts: VerifyOpts) -> None:
        """Check that the version(s) an address targets are in a usable state.

        On a v1 mount the secret only has to exist as a leaf. On a v2 mount the
        retained version records decide: versions older than the oldest
        retained one count as destroyed, and newer than the newest do not
        exist yet.

        Args:
            address: Address to check; a version of 0 means the latest
            opts: Whether any version may satisfy the check, and which state

        Raises:
            NotASecret: If the path is a folder
            SecretNotFound: If nothing is stored at the path
            SecretDeleted: If the target is soft-deleted and ALIVE is required
            SecretDestroyed: If the target is destroyed or out of the window
            VersionNotYetExist: If the target is newer than the newest version
            NoSatisfyingVersion: If any_version and no version qualifies
            UnsupportedMountVersion: If the mount is neither v1 nor v2

        """
        secret, _, version = parse_path(address)
        mount_version = self.mount_version(secret)

        if mount_version == 1:
            self.verify_secret_exists(address)
            return

        if mount_version != 2:
            raise UnsupportedMountVersion(mount_version)

        try:
            records = self.versions(secret)
        except SecretNotFound:
            self.err_if_folder(secret)
            raise SecretNotFound(canonicalize(secret)) from None

        if opts.any_version:
            for record in records:
                if record.destroyed:
                    continue
                if not record.deleted or opts.state == RequiredState.ALIVE_OR_DELETED:
                    return
            raise NoSatisfyingVersion(address, opts.state == RequiredState.ALIVE_OR_DELETED)

        if version == 0:
            record = records[-1]
        else:
            if version < records[0].number:
                raise SecretDestroyed(address)
            if version > records[-1].number:
                raise VersionNotYetExist(address)
            matching = [r for r in records if r.number == version]
            if not matching:
                raise SecretDestroyed(address)
            record = matching[0]

        if record.destroyed:
            raise SecretDestroyed(address)
        if opts.state == RequiredState.ALIVE and record.deleted:
            raise SecretDeleted(address)

    def can_semantically_delete(self, address: str) -> None:
        """Refuse to delete one key out of a multi-key historical snapshot.

        Removing a key means writing a new version without it, which can
        only express the change for the latest version. An older version
        can be removed key-wise only when that key is all it holds.

        Raises:
            AmbiguousOperation: If the key is not isolated in that version

        """
        secret, key, version = parse_path(address)
        if not key or version == 0:
            return

        records = self.versions(secret)
        if records[-1].number == version:
            return

        snapshot = self.read(encode_path(secret, "", version))
        if len(snapshot) != 1 or not snapshot.has(key):
            raise AmbiguousOperation("Cannot delete specific non-isolated key of non-latest version")
