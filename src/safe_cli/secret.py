#!/usr/bin/env python3
"""Secret Model - key/value data, version lifecycle and path-sorted collections."""

import base64
import json
import re
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import nacl.utils

from .errors import SafeError
from .paths import encode_path, path_sort_key

DEFAULT_PASSWORD_LENGTH = 64
DEFAULT_PASSWORD_POLICY = "a-zA-Z0-9"

FORMATS = {
    "base64": lambda value: base64.b64encode(value.encode()).decode(),
}


def normalize_value(value: Any) -> str:
    """Store structured values as compact JSON so every value is a string."""
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


def password_alphabet(policy: str) -> str:
    """Printable characters matched by a regex character grouping such as `a-z0-9`."""
    try:
        group = re.compile(f"[{policy}]")
    except re.error as e:
        raise SafeError(f"invalid password policy `{policy}': {e}") from None

    alphabet = "".join(c for c in string.printable if not c.isspace() and group.match(c))
    if not alphabet:
        raise SafeError(f"password policy `{policy}' allows no characters")
    return alphabet


def random_string(length: int, policy: str = DEFAULT_PASSWORD_POLICY) -> str:
    """Random string of `length` characters from the policy's alphabet, via libsodium."""
    alphabet = password_alphabet(policy)
    # Bytes at or above limit are redrawn so every character is equally likely
    limit = 256 - 256 % len(alphabet)

    out = []
    while len(out) < length:
        for b in nacl.utils.random(length - len(out)):
            if b < limit:
                out.append(alphabet[b % len(alphabet)])
    return "".join(out)


class Secret:
    """A mapping of unique keys to string values."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, str] = {}
        for key, value in (data or {}).items():
            self.data[key] = normalize_value(value)

    @classmethod
    def placeholder(cls) -> "Secret":
        """Throwaway content written only to occupy a version number."""
        return cls({"placeholder": "garbage"})

    def has(self, key: str) -> bool:
        return key in self.data

    def get(self, key: str) -> str:
        return self.data.get(key, "")

    def set(self, key: str, value: Any, skip_if_exists: bool = False) -> None:
        """Set a key, refusing to overwrite when skip_if_exists is given.

        Raises:
            SafeError: If skip_if_exists is set and the key is present

        """
        if skip_if_exists and key in self.data:
            raise SafeError(f"`{key}` already existed")
        self.data[key] = normalize_value(value)

    def delete(self, key: str) -> bool:
        """Remove a key. Returns False if it was not there."""
        if key not in self.data:
            return False
        del self.data[key]
        return True

    def password(self, key: str, length: int, policy: str = DEFAULT_PASSWORD_POLICY,
                 skip_if_exists: bool = False) -> None:
        """Set `key` to a freshly generated random password."""
        if length < 1:
            raise SafeError("password length must be at least 1")
        self.set(key, random_string(length, policy), skip_if_exists)

    def format(self, old_key: str, new_key: str, fmt_type: str, skip_if_exists: bool = False) -> None:
        """Store the value of `old_key`, encoded as `fmt_type`, under `new_key`.

        Raises:
            SafeError: If the format is unknown or `old_key` is missing
            SafeError: If skip_if_exists is set and `new_key` is present

        """
        if fmt_type not in FORMATS:
            raise SafeError(f"unsupported format `{fmt_type}' (supported: {', '.join(sorted(FORMATS))})")
        if old_key not in self.data:
            raise SafeError(f"`{old_key}` does not exist")
        self.set(new_key, FORMATS[fmt_type](self.data[old_key]), skip_if_exists)

    def keys(self) -> List[str]:
        return sorted(self.data)

    def empty(self) -> bool:
        return len(self.data) == 0

    def to_dict(self) -> Dict[str, str]:
        return dict(self.data)

    def copy(self) -> "Secret":
        return Secret(self.data)

    def __len__(self):
        return len(self.data)

    def __eq__(self, other):
        if not isinstance(other, Secret):
            return NotImplemented
        return self.data == other.data

    def __repr__(self):
        return f"Secret(keys={self.keys()!r})"


class SecretState(Enum):
    """Lifecycle state of one version of a secret."""

    ALIVE = "alive"
    DELETED = "deleted"
    DESTROYED = "destroyed"
    # Filler inserted during replay to keep version numbers aligned
    PLACEHOLDER_DESTROYED = "placeholder"

    @property
    def is_destroyed(self) -> bool:
        return self in (SecretState.DESTROYED, SecretState.PLACEHOLDER_DESTROYED)


@dataclass
class SecretVersion:
    """One numbered version of a secret."""

    number: int
    state: SecretState = SecretState.ALIVE
    data: Secret = field(default_factory=Secret)


@dataclass
class SecretEntry:
    """A secret's path together with its retained history, oldest first."""

    path: str
    versions: List[SecretVersion] = field(default_factory=list)

    def latest(self) -> Optional[SecretVersion]:
        return self.versions[-1] if self.versions else None


class Secrets(list):
    """SecretEntry list kept in segment-wise path order."""

    def sort(self, **kwargs):
        kwargs.setdefault("key", lambda entry: path_sort_key(entry.path))
        super().sort(**kwargs)

    def merge(self, other: "Secrets") -> "Secrets":
        """Merge two sorted collections, keeping the left entry on a path collision."""
        merged = Secrets()
        i = j = 0
        while i < len(self) and j < len(other):
            left, right = self[i], other[j]
            left_key, right_key = path_sort_key(left.path), path_sort_key(right.path)
            if left_key == right_key:
                merged.append(left)
                i += 1
                j += 1
            elif left_key < right_key:
                merged.append(left)
                i += 1
            else:
                merged.append(right)
                j += 1

        merged.extend(self[i:])
        merged.extend(other[j:])
        return merged

    def paths(self) -> List[str]:
        """Encoded addresses, one per key of each entry's latest version.

        Entries with no fetched keys contribute their bare path.
        """
        out = []
        for entry in self:
            latest = entry.latest()
            keys = latest.data.keys() if latest else []
            if not keys:
                out.append(encode_path(entry.path))
                continue
            for key in keys:
                out.append(encode_path(entry.path, key))
        return out

    def secret_paths(self) -> List[str]:
        """Raw (unescaped) secret paths in order."""
        return [entry.path for entry in self]
