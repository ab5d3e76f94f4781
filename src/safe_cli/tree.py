#!/usr/bin/env python3
"""Tree fetching and history replay.

construct_secrets() walks a subtree and hydrates each leaf into a SecretEntry;
copy_entry() writes one entry's history onto another path, version by
version, so that numbering and lifecycle states line up with the source.

Paths taken here are raw secret paths (no `:key` / `^version` syntax).
"""

from dataclasses import dataclass
from typing import List, Optional

from .errors import SecretNotFound, UnsupportedMountVersion
from .paths import canonicalize, encode_path
from .secret import Secret, SecretEntry, Secrets, SecretState, SecretVersion


@dataclass
class TreeOpts:
    """What to fetch for each secret found beneath a root."""

    fetch_keys: bool = False              # hydrate key/value data
    fetch_all_versions: bool = False      # whole retained history, not just latest
    get_deleted_versions: bool = False    # recover data of soft-deleted versions
    allow_deleted_secrets: bool = False   # list secrets whose latest version is gone
    skip_version_info: bool = False       # paths only: entries carry no versions
    get_only: bool = False                # root is a single secret; do not list


def _walk(vault, path: str) -> List[str]:
    try:
        names = vault.list(path)
    except SecretNotFound:
        return []

    leaves = []
    for name in names:
        child = f"{path}/{name.rstrip('/')}" if path else name.rstrip("/")
        if name.endswith("/"):
            leaves.extend(_walk(vault, child))
        else:
            leaves.append(child)
    return leaves


def _fetch_version(vault, path: str, record, opts: TreeOpts) -> SecretVersion:
    number = record.number
    if record.destroyed:
        return SecretVersion(number, SecretState.DESTROYED)

    if record.deleted:
        data = Secret()
        if opts.fetch_keys and opts.get_deleted_versions:
            # Deleted content is only readable while undeleted
            vault.client.undelete(path, [number])
            try:
                data = vault.read(encode_path(path, "", number))
            finally:
                vault.client.delete(path, [number])
        return SecretVersion(number, SecretState.DELETED, data)

    data = vault.read(encode_path(path, "", number)) if opts.fetch_keys else Secret()
    return SecretVersion(number, SecretState.ALIVE, data)


def fetch_entry(vault, path: str, opts: TreeOpts) -> Optional[SecretEntry]:
    """Build the SecretEntry for one path, or None if no secret lives there."""
    mount_version = vault.mount_version(path)

    if mount_version == 1:
        try:
            data = vault.read(encode_path(path))
        except SecretNotFound:
            return None
        if opts.skip_version_info:
            return SecretEntry(path)
        return SecretEntry(path, [SecretVersion(1, SecretState.ALIVE, data if opts.fetch_keys else Secret())])

    if mount_version != 2:
        raise UnsupportedMountVersion(mount_version)

    try:
        records = vault.versions(path)
    except SecretNotFound:
        return None

    latest = records[-1]
    if not opts.allow_deleted_secrets and (latest.deleted or latest.destroyed):
        return None

    if opts.skip_version_info:
        return SecretEntry(path)

    chosen = records if opts.fetch_all_versions else [latest]
    return SecretEntry(path, [_fetch_version(vault, path, r, opts) for r in chosen])


def construct_secrets(vault, root: str, opts: Optional[TreeOpts] = None) -> Secrets:
    """Fetch every secret at or beneath `root`, sorted by path.

    The root itself is included when it holds a secret. An empty root walks
    every mount.
    """
    opts = opts or TreeOpts()
    root = canonicalize(root)

    candidates = [root] if root and vault.is_mounted(root) else []
    if not opts.get_only:
        candidates.extend(_walk(vault, root))

    secrets = Secrets()
    seen = set()
    for path in candidates:
        if path in seen:
            continue
        seen.add(path)
        entry = fetch_entry(vault, path, opts)
        if entry is not None:
            secrets.append(entry)

    secrets.sort()
    return secrets


def copy_entry(vault, entry: SecretEntry, dst: str, clear: bool = False, pad: bool = False) -> None:
    """Replay an entry's versions onto `dst`, oldest first.

    Args:
        vault: Vault to write through
        entry: Source history; not modified
        dst: Raw destination path
        clear: Destroy all existing history at `dst` first
        pad: Fill every missing version number below the newest with a
            placeholder that is destroyed afterwards, so numbers match

    Destroyed (and unrecovered deleted) versions are written as placeholder
    content and then destroyed; deleted versions are written and then
    soft-deleted. A v1 destination keeps only the newest version.
    """
    if not entry.versions:
        return

    dst = canonicalize(dst)
    if clear:
        vault.client.destroy_all(dst)

    to_write = list(entry.versions)
    if pad:
        by_number = {version.number: version for version in to_write}
        to_write = [
            by_number.get(n) or SecretVersion(n, SecretState.PLACEHOLDER_DESTROYED)
            for n in range(1, to_write[-1].number + 1)
        ]

    if vault.mount_version(dst) == 1:
        to_write = to_write[-1:]

    to_delete, to_destroy = [], []
    for version in to_write:
        lost = version.state.is_destroyed or version.data.empty()
        data = Secret.placeholder() if lost else version.data
        number = vault.client.write(dst, data.to_dict())

        if lost:
            to_destroy.append(number)
        elif version.state == SecretState.DELETED:
            to_delete.append(number)

    if to_delete:
        vault.client.delete(dst, to_delete)
    if to_destroy:
        vault.client.destroy(dst, to_destroy)
