#!/usr/bin/env python3
"""Mutations - delete, undelete, revert, copy and move, single and recursive.

Each operation is a sequence of independent backend calls issued one at a
time. An error aborts the remaining steps without undoing completed ones;
operations re-verify state first, so re-running one is the way to recover.
"""

import sys
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import (
    AmbiguousOperation,
    KeyNotFound,
    SecretDeleted,
    SecretDestroyed,
    SecretNotFound,
    UnsupportedMountVersion,
    VersionNotYetExist,
)
from .paths import canonicalize, encode_path, parse_path, path_has_key, path_has_version, rebase
from .secret import Secret, SecretEntry
from .tree import TreeOpts, construct_secrets, copy_entry
from .vault import RequiredState, VerifyOpts


@dataclass
class DeleteOpts:
    destroy: bool = False        # destroy instead of soft-delete
    all_versions: bool = False   # every retained version, not just the target


@dataclass
class MoveCopyOpts:
    skip_if_exists: bool = False
    quiet: bool = False
    deep: bool = False               # replay the whole history
    deleted_versions: bool = False   # also carry deleted versions; requires deep


# ----------------------------------------------------------------------------
# Delete / undelete
# ----------------------------------------------------------------------------

def delete(vault, address: str, opts: Optional[DeleteOpts] = None) -> None:
    """Delete (or destroy) a secret, one of its versions, or one of its keys.

    Raises:
        AmbiguousOperation: If a key is addressed in a non-isolated old version
        KeyNotFound: If the addressed key is not in the secret
        SecretNotFound: (or a subclass) if the target is not in a deletable state

    """
    opts = opts or DeleteOpts()
    address = canonicalize(address)

    state = RequiredState.ALIVE_OR_DELETED if opts.destroy else RequiredState.ALIVE
    vault.verify_secret_state(address, VerifyOpts(any_version=opts.all_versions, state=state))
    vault.can_semantically_delete(address)

    if not path_has_key(address):
        return delete_entire_secret(vault, address, opts.destroy, opts.all_versions)

    return _delete_specific_key(vault, address, opts.destroy)


def delete_entire_secret(vault, address: str, destroy: bool, all_versions: bool) -> None:
    """Remove whole versions of a secret without any state checks."""
    secret, _, version = parse_path(address)
    secret = canonicalize(secret)

    if destroy and all_versions:
        vault.client.destroy_all(secret)
        return

    versions = [version] if version else []

    if destroy:
        records = vault.versions(secret)
        if not versions:
            versions = [records[-1].number]

        # Nothing left alive or deleted afterwards: drop the metadata too
        survivors = [r for r in records if not r.destroyed and r.number not in versions]
        if not survivors:
            vault.client.destroy_all(secret)
        else:
            vault.client.destroy(secret, versions)
        return

    if all_versions:
        versions = [r.number for r in vault.versions(secret)]

    vault.client.delete(secret, versions)


def _delete_specific_key(vault, address: str, destroy: bool) -> None:
    secret_path, key, version = parse_path(address)
    snapshot = encode_path(secret_path, "", version)

    secret = vault.read(snapshot)
    if not secret.delete(key):
        raise KeyNotFound(secret_path, key)

    if secret.empty():
        return delete_entire_secret(vault, snapshot, destroy, False)

    vault.write(encode_path(secret_path), secret)


def delete_tree(vault, root: str, opts: Optional[DeleteOpts] = None) -> None:
    """Delete every secret beneath `root`, then `root` itself.

    Already-deleted secrets are included so that a re-run finishes the job.
    The root is skipped when it is exactly a mount point.

    Raises:
        SecretNotFound: If there is nothing at or beneath `root`

    """
    opts = opts or DeleteOpts()
    root = canonicalize(root)
    root_path = canonicalize(parse_path(root)[0])

    secrets = construct_secrets(vault, root_path, TreeOpts(skip_version_info=True, allow_deleted_secrets=True))
    if not secrets:
        raise SecretNotFound(root_path)

    for path in secrets.secret_paths():
        if path == root_path:
            continue
        delete_entire_secret(vault, encode_path(path), opts.destroy, opts.all_versions)

    if not vault.is_mounted(root_path) or root_path == canonicalize(vault.mount_path(root_path)):
        return

    try:
        delete_entire_secret(vault, root, opts.destroy, opts.all_versions)
    except SecretNotFound:
        # root was only a folder
        return


def undelete(vault, address: str) -> None:
    """Undelete one version (the latest if none is given) of a secret.

    Raises:
        AmbiguousOperation: If the address names a key
        UnsupportedMountVersion: On a v1 mount
        SecretDestroyed: If the version is destroyed or out of the window
        VersionNotYetExist: If the version is newer than the newest

    """
    secret, key, version = parse_path(address)
    secret = canonicalize(secret)
    if key:
        raise AmbiguousOperation(f"Cannot undelete specific key ({address})")

    mount_version = vault.mount_version(secret)
    if mount_version != 2:
        raise UnsupportedMountVersion(mount_version, "undelete")

    records = vault.versions(secret)
    if version == 0:
        version = records[-1].number

    destroyed = SecretDestroyed(secret, f"`{secret}' version: {version} is destroyed")
    if version < records[0].number:
        raise destroyed
    if version > records[-1].number:
        raise VersionNotYetExist(encode_path(secret, "", version))

    matching = [r for r in records if r.number == version]
    if not matching or matching[0].destroyed:
        raise destroyed

    vault.client.undelete(secret, [version])


def undelete_all(vault, address: str) -> None:
    """Undelete every retained version of a secret."""
    if path_has_key(address):
        raise AmbiguousOperation(f"Cannot undelete specific key ({address})")
    if path_has_version(address):
        raise AmbiguousOperation(f"--all given but path ({address}) has version specified")
    secret = parse_path(address)[0]

    mount_version = vault.mount_version(secret)
    if mount_version != 2:
        raise UnsupportedMountVersion(mount_version, "undelete")

    records = vault.versions(secret)
    vault.client.undelete(canonicalize(secret), [r.number for r in records])


def revert(vault, address: str, target: int, deleted: bool = False) -> None:
    """Write an older version of a secret back as its newest version.

    Args:
        vault: Vault to operate on
        address: Secret path, without key or version
        target: Version number to restore; 0 does nothing
        deleted: Allow restoring a soft-deleted version (it stays deleted)

    """
    secret, key, version = parse_path(address)
    secret = canonicalize(secret)
    if key:
        raise AmbiguousOperation("Cannot call revert with path containing key")
    if version:
        raise AmbiguousOperation("Cannot call revert with path containing version")
    if target == 0:
        return

    records = vault.versions(secret)
    if target < records[0].number:
        raise SecretDestroyed(secret, f"Version {target} of secret `{secret}' is destroyed")
    if target > records[-1].number:
        raise VersionNotYetExist(encode_path(secret, "", target))

    matching = [r for r in records if r.number == target]
    if not matching or matching[0].destroyed:
        raise SecretDestroyed(secret, f"Version {target} of secret `{secret}' is destroyed")

    record = matching[0]
    pinned = encode_path(secret, "", target)
    if record.deleted:
        if not deleted:
            raise SecretDeleted(pinned)
        undelete(vault, pinned)

    if target == records[-1].number:
        return

    vault.write(encode_path(secret), vault.read(pinned))

    if record.deleted:
        delete(vault, pinned)


# ----------------------------------------------------------------------------
# Copy / move
# ----------------------------------------------------------------------------

def _refuse(opts: MoveCopyOpts, message: str) -> None:
    if not opts.quiet:
        print(message, file=sys.stderr)


def _destination_exists(vault, address: str, deep: bool) -> bool:
    """Whether a copy to `address` would clobber something.

    A deep copy replaces the whole history, so any retained version counts,
    deleted ones included.
    """
    if not deep:
        return vault.exists(address)
    try:
        vault.versions(parse_path(address)[0])
    except SecretNotFound:
        return False
    return True


def copy(vault, oldpath: str, newpath: str, opts: Optional[MoveCopyOpts] = None) -> bool:
    """Copy a secret, a version of it, or a single key to another path.

    key -> key and key -> no key (same key name) are allowed; no key -> key
    is not. Returns False, having written nothing, when skip_if_exists is set
    and the destination already exists.

    Raises:
        ValueError: If deleted_versions is given without deep
        AmbiguousOperation: For version-pinned destinations, deep copies of a
            pinned version or of a key, or a whole secret into a key
        KeyNotFound: If the source key does not exist

    """
    opts = opts or MoveCopyOpts()
    if opts.deleted_versions and not opts.deep:
        raise ValueError("deleted_versions requires deep")

    oldpath = canonicalize(oldpath)
    newpath = canonicalize(newpath)
    src_path, src_key, src_version = parse_path(oldpath)
    dst_path, dst_key, dst_version = parse_path(newpath)

    if dst_version:
        raise AmbiguousOperation("Copying a secret to a specific destination version is not supported")
    if opts.deep and src_version:
        raise AmbiguousOperation("Performing a deep copy of a specified version is not supported")
    if opts.deep and src_key:
        raise AmbiguousOperation("Cannot take deep copy of a specific key")
    if dst_key and not src_key:
        raise AmbiguousOperation(f"Cannot move full secret `{oldpath}` into specific key `{newpath}`")

    state = RequiredState.ALIVE_OR_DELETED if opts.deleted_versions else RequiredState.ALIVE
    vault.verify_secret_state(oldpath, VerifyOpts(any_version=opts.deep, state=state))

    if opts.skip_if_exists and _destination_exists(vault, newpath, opts.deep):
        _refuse(opts, f"Cowardly refusing to copy/move data into {newpath}, as that would clobber existing data")
        return False

    if src_key:
        source = vault.read(oldpath)
        dst_key = dst_key or src_key

        try:
            target = vault.read(encode_path(dst_path))
        except SecretNotFound:
            target = Secret()

        target.set(dst_key, source.get(src_key))
        vault.write(encode_path(dst_path), target)
        return True

    tree = construct_secrets(vault, src_path, TreeOpts(
        fetch_keys=True,
        get_only=True,
        fetch_all_versions=opts.deep or bool(src_version),
        get_deleted_versions=opts.deep and opts.deleted_versions,
        allow_deleted_secrets=opts.deep or bool(src_version),
    ))
    if not tree:
        raise SecretNotFound(canonicalize(src_path))

    entry = tree[0]
    if src_version:
        entry = SecretEntry(entry.path, [v for v in entry.versions if v.number == src_version])
        if not entry.versions:
            raise SecretDestroyed(oldpath)

    copy_entry(vault, entry, dst_path, clear=opts.deep, pad=opts.deep)
    return True


def move(vault, oldpath: str, newpath: str, opts: Optional[MoveCopyOpts] = None) -> bool:
    """Copy, then remove the source. See copy() for the key rules.

    With deep and deleted_versions the source is destroyed outright, since
    its whole history now lives at the destination.
    """
    opts = opts or MoveCopyOpts()
    oldpath = canonicalize(oldpath)
    newpath = canonicalize(newpath)

    try:
        vault.can_semantically_delete(oldpath)
    except AmbiguousOperation as e:
        raise AmbiguousOperation(f"Can't move `{oldpath}': {e}. Did you mean cp?") from e

    if not copy(vault, oldpath, newpath, opts):
        return False

    if opts.deep and opts.deleted_versions:
        vault.client.destroy_all(canonicalize(parse_path(oldpath)[0]))
    else:
        delete(vault, oldpath, DeleteOpts())
    return True


def move_copy_tree(
    vault,
    old_root: str,
    new_root: str,
    op: Callable[..., bool],
    opts: Optional[MoveCopyOpts] = None,
) -> bool:
    """Apply copy or move to every secret beneath `old_root`, then to the root.

    With skip_if_exists, every destination is checked before anything is
    written, and nothing is written if any of them already exists. For a
    deep operation any existing history counts; otherwise only living
    secrets do.

    Returns:
        False if the operation was refused because of existing destinations

    """
    opts = opts or MoveCopyOpts()
    old_root = canonicalize(old_root)
    new_root = canonicalize(new_root)
    old_path, old_key, old_version = parse_path(old_root)
    new_path, new_key, new_version = parse_path(new_root)

    if old_key or new_key:
        raise AmbiguousOperation("Cannot recursively copy or move a specific key")
    if old_version or new_version:
        raise AmbiguousOperation("Cannot recursively copy or move a path with specific version")

    old_path, new_path = canonicalize(old_path), canonicalize(new_path)

    tree = construct_secrets(vault, old_path, TreeOpts(allow_deleted_secrets=opts.deep, skip_version_info=True))
    leaves = [p for p in tree.secret_paths() if p != old_path]
    root_holds_data = vault.is_mounted(old_path) and vault.exists(encode_path(old_path))

    if opts.skip_if_exists:
        existing = set(construct_secrets(
            vault, new_path, TreeOpts(allow_deleted_secrets=opts.deep, skip_version_info=True)
        ).secret_paths())

        targets = [rebase(p, old_path, new_path) for p in leaves]
        if root_holds_data:
            targets.append(new_path)

        clobbered = [t for t in targets if t in existing]
        if clobbered:
            if not opts.quiet:
                print(f"Cowardly refusing to copy/move data into {new_path}, "
                      "as the following paths would be clobbered:", file=sys.stderr)
                for path in clobbered:
                    print(f"- {path}", file=sys.stderr)
            return False

    for path in leaves:
        op(vault, encode_path(path), encode_path(rebase(path, old_path, new_path)), opts)

    if root_holds_data:
        op(vault, encode_path(old_path), encode_path(new_path), opts)
    return True
