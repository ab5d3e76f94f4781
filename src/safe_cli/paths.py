#!/usr/bin/env python3
"""Secret addresses - parsing and encoding of `path[:key][^version]` strings.

A colon separates the secret path from a key inside it, and a caret
introduces a version number. Either character can appear literally inside
a path segment or key when escaped with a backslash; a backslash that would
otherwise escape one of them is itself written as `\\\\`.

Example:
    parse_path("secret/db:password^3")   -> ("secret/db", "password", 3)
    encode_path("secret/a:b", "k^1", 0)  -> "secret/a\\:b:k\\^1"
"""

import re
from typing import List, Optional, Tuple

from .errors import InvalidAddress

ESCAPABLE = ":^\\"

_SLASH_RUNS = re.compile(r"/+")


def _find_unescaped(s: str, delim: str) -> int:
    """Return the index of the first unescaped `delim` in `s`, or -1."""
    i = 0
    while i < len(s):
        c = s[i]
        if c == "\\" and i + 1 < len(s) and s[i + 1] in ESCAPABLE:
            i += 2
            continue
        if c == delim:
            return i
        i += 1
    return -1


def unescape(s: str) -> str:
    """Remove the backslash from every escaped `:`, `^` and `\\`."""
    out = []
    i = 0
    while i < len(s):
        if s[i] == "\\" and i + 1 < len(s) and s[i + 1] in ESCAPABLE:
            out.append(s[i + 1])
            i += 2
            continue
        out.append(s[i])
        i += 1
    return "".join(out)


def escape_path_segment(segment: str) -> str:
    """Escape `:` and `^` so they are not read as delimiters.

    A backslash is doubled when it ends the segment or precedes a character
    parse_path would treat as escaped; any other backslash stays as is.
    """
    out = []
    for i, c in enumerate(segment):
        if c in ":^":
            out.append("\\" + c)
        elif c == "\\" and (i + 1 == len(segment) or segment[i + 1] in ESCAPABLE):
            out.append("\\\\")
        else:
            out.append(c)
    return "".join(out)


def _parse_version(raw: str, address: str) -> int:
    if not raw.isdigit() or not raw.isascii():
        raise InvalidAddress(
            f"`{address}' has a non-numeric version `{raw}' "
            "(escape a literal caret as \\^)"
        )
    return int(raw)


def parse_path(address: str) -> Tuple[str, str, int]:
    """Split an address into its path, key and version.

    The first unescaped colon ends the path. The first unescaped caret in the
    key (or in the path, when there is no key) starts the version. A version
    of 0 means "unspecified".

    Args:
        address: Raw address string as typed by a user

    Returns:
        (path, key, version) with all escapes removed

    Raises:
        InvalidAddress: If the text after the caret is not a number

    """
    version = 0

    colon = _find_unescaped(address, ":")
    if colon >= 0:
        raw_path, raw_key = address[:colon], address[colon + 1:]
        caret = _find_unescaped(raw_key, "^")
        if caret >= 0:
            version = _parse_version(raw_key[caret + 1:], address)
            raw_key = raw_key[:caret]
    else:
        raw_path, raw_key = address, ""
        caret = _find_unescaped(raw_path, "^")
        if caret >= 0:
            version = _parse_version(raw_path[caret + 1:], address)
            raw_path = raw_path[:caret]

    return unescape(raw_path), unescape(raw_key), version


def encode_path(path: str, key: str = "", version: int = 0) -> str:
    """Build an address string that parse_path() turns back into its parts."""
    out = escape_path_segment(path)
    if key:
        out += ":" + escape_path_segment(key)
    if version:
        out += f"^{version}"
    return out


def canonicalize(path: str) -> str:
    """Trim leading/trailing slashes and collapse runs of slashes."""
    return _SLASH_RUNS.sub("/", path).strip("/")


def path_has_key(address: str) -> bool:
    return parse_path(address)[1] != ""


def path_has_version(address: str) -> bool:
    return parse_path(address)[2] != 0


def path_sort_key(path: str) -> Tuple[List[str], bool]:
    """Sort key ordering paths segment by segment, folders after leaves."""
    return canonicalize(path).split("/"), path.endswith("/")



def is_beneath(path: str, root: str) -> bool:
    """True if `path` is `root` or lives somewhere under it."""
    path, root = canonicalize(path), canonicalize(root)
    return root == "" or path == root or path.startswith(root + "/")


def rebase(path: str, old_root: str, new_root: str) -> Optional[str]:
    """Move `path` from under `old_root` to the same place under `new_root`."""
    path, old_root, new_root = canonicalize(path), canonicalize(old_root), canonicalize(new_root)
    if not is_beneath(path, old_root):
        return None
    rest = path[len(old_root):].lstrip("/")
    if not rest:
        return new_root
    return f"{new_root}/{rest}" if new_root else rest
