#!/usr/bin/env python3
"""Export/Import - JSON backup and migration of secret trees.

Two formats are understood:

Legacy (single version per secret):
    {"secret/a": {"key": "value"}, ...}

Versioned, wrapped in a one-element array so that tools which only know
the legacy format refuse it instead of misreading it:
    [{"export_version": 2,
      "data": {"secret/a": {"first": 3, "versions": [
          {"deleted": false, "destroyed": false, "value": {"key": "value"}}, ...]}},
      "requires_versioning": {"secret": true}}]
"""

import json
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import AmbiguousOperation, BackendError, ExportFormatError, SafeError, UnsupportedMountVersion
from .paths import canonicalize, encode_path, is_beneath, parse_path, path_sort_key
from .secret import Secret, SecretEntry, Secrets, SecretState, SecretVersion
from .tree import TreeOpts, construct_secrets, copy_entry

EXPORT_VERSION = 2


@dataclass
class ExportOpts:
    all_versions: bool = False   # every retained version, forcing the versioned format
    deleted: bool = False        # recover and keep soft-deleted versions


@dataclass
class ImportOpts:
    ignore_destroyed: bool = False
    ignore_deleted: bool = False
    shallow: bool = False        # only the newest version of each secret


def _default_log(msg: str) -> None:
    """Log to stderr."""
    print(msg, file=sys.stderr)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def export_roots(paths: Iterable[str]) -> List[str]:
    """Canonicalise root paths and drop any that lie beneath another.

    Raises:
        AmbiguousOperation: If a path carries a key or version

    """
    roots = []
    for address in paths:
        path, key, version = parse_path(canonicalize(address))
        if key:
            raise AmbiguousOperation(f"Cannot export path with key ({address})")
        if version:
            raise AmbiguousOperation(f"Cannot export path with version ({address})")
        roots.append(canonicalize(path))

    roots.sort(key=path_sort_key)
    kept: List[str] = []
    for root in roots:
        if not any(is_beneath(root, parent) for parent in kept):
            kept.append(root)
    return kept


def fetch_export(vault, paths: Iterable[str], opts: ExportOpts) -> Secrets:
    """Fetch and merge every secret under the given roots."""
    secrets = Secrets()
    for root in export_roots(paths):
        secrets = secrets.merge(construct_secrets(vault, root, TreeOpts(
            fetch_keys=True,
            fetch_all_versions=opts.all_versions,
            get_deleted_versions=opts.deleted,
            allow_deleted_secrets=opts.deleted,
        )))
    return secrets


def build_export(vault, secrets: Secrets, opts: ExportOpts) -> Any:
    """Encode fetched secrets, using the legacy format when it can hold them."""
    if all(len(entry.versions) <= 1 for entry in secrets):
        export = {}
        for entry in secrets:
            latest = entry.latest()
            if latest is None or latest.state.is_destroyed:
                continue
            export[entry.path] = latest.data.to_dict()
        return export

    data: Dict[str, Any] = {}
    requires_versioning: Dict[str, bool] = {}

    for entry in secrets:
        if len(entry.versions) > 1:
            requires_versioning[vault.mount_path(entry.path)] = True

        item: Dict[str, Any] = {}
        first = entry.versions[0].number
        if first != 1:
            item["first"] = first

        item["versions"] = []
        for version in entry.versions:
            deleted = version.state == SecretState.DELETED
            item["versions"].append({
                "deleted": deleted and opts.deleted,
                "destroyed": version.state.is_destroyed or (deleted and not opts.deleted),
                "value": version.data.to_dict(),
            })

        data[entry.path] = item

    return [{
        "export_version": EXPORT_VERSION,
        "data": data,
        "requires_versioning": requires_versioning,
    }]


def export_json(vault, paths: Iterable[str], opts: ExportOpts) -> str:
    return json.dumps(build_export(vault, fetch_export(vault, paths, opts), opts))


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def detect_format(payload: Any) -> int:
    """Return 1 for the legacy format, 2 for the versioned envelope.

    Raises:
        ExportFormatError: If the payload is neither

    """
    if isinstance(payload, dict):
        return 1

    if isinstance(payload, list) and len(payload) == 1 and isinstance(payload[0], dict):
        version = payload[0].get("export_version")
        if isinstance(version, (int, float)) and not isinstance(version, bool) and version == EXPORT_VERSION:
            return 2

    raise ExportFormatError("Unknown export file format - aborting")


def _import_legacy(vault, payload: Dict[str, Any], log: Callable[[str], None]) -> int:
    count = 0
    for path in sorted(payload, key=path_sort_key):
        values = payload[path]
        if not isinstance(values, dict):
            raise ExportFormatError(f"Improperly formatted export file: `{path}' is not an object")
        vault.write(encode_path(canonicalize(path)), Secret(values))
        log(f"wrote {path}")
        count += 1
    return count


def _check_versioning(vault, requires_versioning: Dict[str, bool]) -> None:
    for mount, needs_versioning in requires_versioning.items():
        if not needs_versioning:
            continue

        try:
            mount_version = vault.mount_version(mount)
        except SafeError as e:
            raise BackendError(f"Could not determine existing mount version: {e}") from e

        if mount_version != 2:
            raise UnsupportedMountVersion(
                mount_version,
                f"Export for mount `{mount}' has secrets with multiple versions, and importing them",
            )


def _entry_from_export(path: str, secret: Dict[str, Any], opts: ImportOpts) -> SecretEntry:
    first = secret.get("first") or 1
    indexed = list(enumerate(secret.get("versions") or []))
    if opts.shallow:
        indexed = indexed[-1:]

    versions = []
    for i, raw in indexed:
        if raw.get("destroyed"):
            if opts.ignore_destroyed:
                continue
            state = SecretState.DESTROYED
        elif raw.get("deleted"):
            if opts.ignore_deleted:
                continue
            state = SecretState.DELETED
        else:
            state = SecretState.ALIVE

        versions.append(SecretVersion(first + i, state, Secret(raw.get("value") or {})))

    return SecretEntry(path, versions)


def _import_versioned(vault, envelope: Dict[str, Any], opts: ImportOpts, log: Callable[[str], None]) -> int:
    data = envelope.get("data")
    if not isinstance(data, dict):
        raise ExportFormatError("Improperly formatted export file")

    if not opts.shallow:
        _check_versioning(vault, envelope.get("requires_versioning") or {})

    pad = not (opts.ignore_destroyed or opts.shallow)
    count = 0
    for path in sorted(data, key=path_sort_key):
        entry = _entry_from_export(canonicalize(path), data[path], opts)
        copy_entry(vault, entry, entry.path, clear=True, pad=pad)
        log(f"wrote {path}")
        count += 1
    return count


def import_secrets(
    vault,
    payload: Any,
    opts: Optional[ImportOpts] = None,
    log: Callable[[str], None] = _default_log,
) -> int:
    """Write an exported tree back into the store.

    Args:
        vault: Vault to write through
        payload: Decoded JSON of an export
        opts: Which versions to skip
        log: Progress callback, one line per secret written

    Returns:
        Number of secrets written

    """
    opts = opts or ImportOpts()
    if detect_format(payload) == 1:
        return _import_legacy(vault, payload, log)
    return _import_versioned(vault, payload[0], opts, log)


def import_json(vault, text: str, opts: Optional[ImportOpts] = None, log: Callable[[str], None] = _default_log) -> int:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ExportFormatError(f"Could not interpret export file: {e}") from e
    return import_secrets(vault, payload, opts, log)
