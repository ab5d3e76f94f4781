#!/usr/bin/env python3
"""Secret Store - Encrypted SQLite backend with KV v1 and v2 mounts.

Every version of every secret is sealed with libsodium SecretBox under a key
derived from the master password with Argon2id. Mounts carry a KV version:

- v1 mounts keep exactly one value per secret; deleting it removes it.
- v2 mounts keep numbered versions that can be soft-deleted, undeleted and
  destroyed, and optionally prune versions beyond `max_versions`.
"""

import json
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import nacl.exceptions
import nacl.pwhash
import nacl.secret
import nacl.utils

from .errors import BackendError, SecretNotFound, StoreLocked, UnsupportedMountVersion
from .paths import canonicalize, is_beneath

SALT_SIZE = 16
NONCE_SIZE = 24
KEY_SIZE = 32
OPS_LIMIT = nacl.pwhash.OPSLIMIT_INTERACTIVE
MEM_LIMIT = nacl.pwhash.MEMLIMIT_INTERACTIVE
CANARY = "SAFE_CANARY"


def derive_key(password, salt, opslimit=OPS_LIMIT, memlimit=MEM_LIMIT):
    """Derive encryption key from password using Argon2id."""
    return nacl.pwhash.argon2id.kdf(
        KEY_SIZE,
        password.encode('utf-8'),
        salt,
        opslimit=opslimit,
        memlimit=memlimit
    )


def encrypt_secret(key, plaintext):
    """Encrypt plaintext using SecretBox with fresh nonce."""
    box = nacl.secret.SecretBox(key)
    nonce = nacl.utils.random(NONCE_SIZE)
    # encrypt() prefixes the nonce; it is stored in its own column
    ciphertext = box.encrypt(plaintext.encode('utf-8'), nonce)[NONCE_SIZE:]
    return ciphertext, nonce


def decrypt_secret(key, ciphertext, nonce):
    """Decrypt ciphertext using SecretBox."""
    box = nacl.secret.SecretBox(key)
    return box.decrypt(ciphertext, nonce).decode('utf-8')


def init_db(store_path):
    """Initialize store database schema."""
    with closing(sqlite3.connect(store_path)) as conn:
        conn.executescript("""
            CREATE TABLE metadata (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                salt BLOB NOT NULL,
                opslimit INTEGER NOT NULL,
                memlimit INTEGER NOT NULL,
                canary_ciphertext BLOB NOT NULL,
                canary_nonce BLOB NOT NULL
            );

            CREATE TABLE mounts (
                name TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                max_versions INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE versions (
                path TEXT NOT NULL,
                number INTEGER NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0,
                destroyed INTEGER NOT NULL DEFAULT 0,
                ciphertext BLOB,
                nonce BLOB,
                created TEXT,
                PRIMARY KEY (path, number)
            );
        """)
        conn.commit()


def get_metadata(conn):
    """Get store metadata."""
    cursor = conn.cursor()
    cursor.execute("SELECT salt, opslimit, memlimit, canary_ciphertext, canary_nonce FROM metadata WHERE id = 1")
    row = cursor.fetchone()
    if not row:
        return None
    return {'salt': row[0], 'opslimit': row[1], 'memlimit': row[2], 'canary_ciphertext': row[3], 'canary_nonce': row[4]}


def create_store(store_path, password=None, key=None):
    """Create a new store file and return its encryption key.

    Either a password (from which the key is derived) or a raw 32-byte key
    must be given. The salt is always recorded so the password can unlock it.
    """
    salt = nacl.utils.random(SALT_SIZE)
    if key is None:
        key = derive_key(password, salt)

    init_db(store_path)
    canary_ciphertext, canary_nonce = encrypt_secret(key, CANARY)

    with closing(sqlite3.connect(store_path)) as conn:
        conn.execute(
            "INSERT INTO metadata (id, salt, opslimit, memlimit, canary_ciphertext, canary_nonce) VALUES (1, ?, ?, ?, ?, ?)",
            (salt, OPS_LIMIT, MEM_LIMIT, canary_ciphertext, canary_nonce)
        )
        conn.commit()

    return key


def verify_key(store_path, key):
    """Raise StoreLocked unless `key` opens the store's canary."""
    with closing(sqlite3.connect(store_path)) as conn:
        metadata = get_metadata(conn)

    if not metadata:
        raise StoreLocked(f"Invalid store format: {store_path}")

    try:
        canary = decrypt_secret(key, metadata['canary_ciphertext'], metadata['canary_nonce'])
    except nacl.exceptions.CryptoError:
        raise StoreLocked("Invalid password") from None

    if canary != CANARY:
        raise StoreLocked("Invalid password")


def unlock_store(store_path, password):
    """Derive the key for an existing store and verify it."""
    store_path = Path(store_path)
    if not store_path.exists():
        raise StoreLocked(f"Store not found: {store_path}")

    with closing(sqlite3.connect(store_path)) as conn:
        metadata = get_metadata(conn)

    if not metadata:
        raise StoreLocked(f"Invalid store format: {store_path}")

    key = derive_key(password, metadata['salt'], metadata['opslimit'], metadata['memlimit'])
    verify_key(store_path, key)
    return key


@dataclass
class Mount:
    """A named storage engine instance backing a subtree of paths."""

    name: str
    version: int
    max_versions: int = 0


@dataclass
class VersionRecord:
    """Backend-reported metadata for one retained version."""

    number: int
    deleted: bool = False
    destroyed: bool = False
    created: Optional[str] = None


class SecretStore:
    """Backend for reading and mutating secrets in an encrypted store file."""

    def __init__(self, store_path: Path, key: bytes, audit_logger=None):
        """Initialize the store.

        Args:
            store_path: Path to an initialised store database
            key: 32-byte key that opens the store
            audit_logger: Optional AuditLogger recording every mutation

        """
        self.store_path = Path(store_path)
        self.key = key
        self.audit_logger = audit_logger

    @contextmanager
    def _db(self):
        conn = sqlite3.connect(self.store_path)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _audit(self, action: str, path: str, versions: Optional[List[int]] = None, note: Optional[str] = None) -> None:
        if self.audit_logger:
            self.audit_logger.record(action, path, versions, note=note)

    # ------------------------------------------------------------------
    # Mounts
    # ------------------------------------------------------------------

    def mount(self, name: str, version: int = 2, max_versions: int = 0) -> Mount:
        """Create a mount, or retune `max_versions` of an existing one.

        Raises:
            UnsupportedMountVersion: If version is not 1 or 2
            BackendError: If the mount exists with a different KV version

        """
        name = canonicalize(name)
        if version not in (1, 2):
            raise UnsupportedMountVersion(version)
        if not name:
            raise BackendError("mount name cannot be empty")

        with self._db() as conn:
            row = conn.execute("SELECT version FROM mounts WHERE name = ?", (name,)).fetchone()
            if row and row[0] != version:
                raise BackendError(f"mount `{name}' is already a v{row[0]} mount")
            if row:
                conn.execute("UPDATE mounts SET max_versions = ? WHERE name = ?", (max_versions, name))
            else:
                conn.execute(
                    "INSERT INTO mounts (name, version, max_versions) VALUES (?, ?, ?)",
                    (name, version, max_versions)
                )

        self._audit("MOUNT", name, note=f"kv-v{version}")
        return Mount(name, version, max_versions)

    def mounts(self) -> List[Mount]:
        with self._db() as conn:
            rows = conn.execute("SELECT name, version, max_versions FROM mounts ORDER BY name").fetchall()
        return [Mount(*row) for row in rows]

    def _mount_for(self, path: str) -> Optional[Mount]:
        """Longest mount whose name is a segment prefix of `path`, if any."""
        path = canonicalize(path)
        best = None
        for mount in self.mounts():
            if is_beneath(path, mount.name) and (best is None or len(mount.name) > len(best.name)):
                best = mount
        return best

    def _find_mount(self, path: str) -> Mount:
        mount = self._mount_for(path)
        if mount is None:
            raise BackendError(f"no mount found for `{canonicalize(path)}'")
        return mount

    def is_mounted(self, path: str) -> bool:
        return self._mount_for(path) is not None

    def mount_path(self, path: str) -> str:
        return self._find_mount(path).name

    def mount_version(self, path: str) -> int:
        return self._find_mount(path).version

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    def _rows(self, conn, path):
        return conn.execute(
            "SELECT number, deleted, destroyed, ciphertext, nonce, created FROM versions"
            " WHERE path = ? ORDER BY number",
            (path,)
        ).fetchall()

    def read(self, path: str, version: int = 0) -> Dict[str, Any]:
        """Return the decrypted key/value data of a secret.

        Args:
            path: Secret path
            version: Version number on a v2 mount (0 = latest)

        Raises:
            SecretNotFound: If the target is absent, deleted or destroyed

        """
        path = canonicalize(path)
        mount = self._find_mount(path)

        with self._db() as conn:
            rows = self._rows(conn, path)

        if not rows:
            raise SecretNotFound(path)

        if mount.version == 1 or version == 0:
            row = rows[-1]
        else:
            matching = [r for r in rows if r[0] == version]
            if not matching:
                raise SecretNotFound(path)
            row = matching[0]

        _, deleted, destroyed, ciphertext, nonce, _ = row
        if deleted or destroyed:
            raise SecretNotFound(path)

        return json.loads(decrypt_secret(self.key, ciphertext, nonce))

    def write(self, path: str, data: Dict[str, Any]) -> int:
        """Store a new value and return the version number it was given."""
        path = canonicalize(path)
        mount = self._find_mount(path)
        if path == mount.name:
            raise BackendError(f"cannot write a secret at mount point `{path}'")

        ciphertext, nonce = encrypt_secret(self.key, json.dumps(data))
        now = datetime.now(timezone.utc).isoformat()

        with self._db() as conn:
            if mount.version == 1:
                conn.execute("DELETE FROM versions WHERE path = ?", (path,))
                number = 1
            else:
                row = conn.execute("SELECT MAX(number) FROM versions WHERE path = ?", (path,)).fetchone()
                number = (row[0] or 0) + 1

            conn.execute(
                """INSERT INTO versions (path, number, deleted, destroyed, ciphertext, nonce, created)
                   VALUES (?, ?, 0, 0, ?, ?, ?)""",
                (path, number, ciphertext, nonce, now)
            )

            if mount.version == 2 and mount.max_versions > 0:
                conn.execute(
                    "DELETE FROM versions WHERE path = ? AND number <= ?",
                    (path, number - mount.max_versions)
                )

        self._audit("WRITE", path, [number])
        return number

    def list(self, path: str) -> List[str]:
        """Names directly beneath `path`; folders carry a trailing slash.

        Raises:
            SecretNotFound: If nothing lives beneath `path`

        """
        path = canonicalize(path)

        if self._mount_for(path) is None:
            # Above every mount: list the next segment of the mounts beneath
            names = {
                m.name[len(path):].lstrip("/").split("/")[0] + "/"
                for m in self.mounts() if is_beneath(m.name, path)
            }
            if not names:
                raise SecretNotFound(path)
            return sorted(names)

        prefix = path + "/"
        with self._db() as conn:
            rows = conn.execute("SELECT DISTINCT path FROM versions").fetchall()

        names = set()
        for (stored,) in rows:
            if not stored.startswith(prefix):
                continue
            rest = stored[len(prefix):]
            if "/" in rest:
                names.add(rest.split("/", 1)[0] + "/")
            else:
                names.add(rest)

        if not names:
            raise SecretNotFound(path)
        return sorted(names)

    def _numbers(self, rows, versions: Optional[Iterable[int]]) -> List[int]:
        if versions:
            return sorted(set(int(v) for v in versions))
        return [rows[-1][0]] if rows else []

    def delete(self, path: str, versions: Optional[Iterable[int]] = None) -> None:
        """Soft-delete versions on v2 (latest if none given); remove on v1."""
        path = canonicalize(path)
        mount = self._find_mount(path)

        with self._db() as conn:
            if mount.version == 1:
                conn.execute("DELETE FROM versions WHERE path = ?", (path,))
                numbers = []
            else:
                numbers = self._numbers(self._rows(conn, path), versions)
                conn.executemany(
                    "UPDATE versions SET deleted = 1 WHERE path = ? AND number = ? AND destroyed = 0",
                    [(path, n) for n in numbers]
                )

        self._audit("DELETE", path, numbers)

    def undelete(self, path: str, versions: Iterable[int]) -> None:
        """Clear the deleted flag of the given (non-destroyed) versions."""
        path = canonicalize(path)
        mount = self._find_mount(path)
        if mount.version != 2:
            raise UnsupportedMountVersion(mount.version, "undelete")

        numbers = sorted(set(int(v) for v in versions))
        with self._db() as conn:
            conn.executemany(
                "UPDATE versions SET deleted = 0 WHERE path = ? AND number = ? AND destroyed = 0",
                [(path, n) for n in numbers]
            )

        self._audit("UNDELETE", path, numbers)

    def destroy(self, path: str, versions: Iterable[int]) -> None:
        """Irrevocably wipe the given versions on v2; remove the secret on v1."""
        path = canonicalize(path)
        mount = self._find_mount(path)

        with self._db() as conn:
            if mount.version == 1:
                conn.execute("DELETE FROM versions WHERE path = ?", (path,))
                numbers = []
            else:
                numbers = sorted(set(int(v) for v in versions))
                conn.executemany(
                    "UPDATE versions SET destroyed = 1, ciphertext = NULL, nonce = NULL"
                    " WHERE path = ? AND number = ?",
                    [(path, n) for n in numbers]
                )

        self._audit("DESTROY", path, numbers)

    def destroy_all(self, path: str) -> None:
        """Remove every version and all metadata of a secret."""
        path = canonicalize(path)
        self._find_mount(path)

        with self._db() as conn:
            conn.execute("DELETE FROM versions WHERE path = ?", (path,))

        self._audit("DESTROY_ALL", path)

    def versions(self, path: str) -> List[VersionRecord]:
        """Retained version records, oldest first.

        Raises:
            SecretNotFound: If the secret has no metadata at all

        """
        path = canonicalize(path)
        mount = self._find_mount(path)

        with self._db() as conn:
            rows = self._rows(conn, path)

        if not rows:
            raise SecretNotFound(path)

        if mount.version == 1:
            return [VersionRecord(number=1, created=rows[-1][5])]

        return [
            VersionRecord(number=r[0], deleted=bool(r[1]), destroyed=bool(r[2]), created=r[5])
            for r in rows
        ]
