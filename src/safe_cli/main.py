#!/usr/bin/env python3
"""Safe CLI - Manage a hierarchical, versioned secret store from the shell.
Uses SQLite storage and libsodium cryptography via pynacl.

Addresses take the form `path[:key][^version]`, e.g. `secret/db:password^3`.
"""

import argparse
import base64
import getpass
import json
import os
import sys
from datetime import datetime, timezone
from importlib.metadata import version
from pathlib import Path

from .audit import AuditLogger
from .errors import NotFoundError, SafeError, SecretNotFound, StoreLocked
from .migration import ExportOpts, ImportOpts, export_json, import_json
from .operations import (
    DeleteOpts,
    MoveCopyOpts,
    copy,
    delete,
    delete_tree,
    move,
    move_copy_tree,
    revert,
    undelete,
    undelete_all,
)
from .paths import canonicalize, encode_path, parse_path, path_has_key
from .secret import DEFAULT_PASSWORD_LENGTH, DEFAULT_PASSWORD_POLICY, FORMATS, Secret, Secrets
from .store import SecretStore, create_store, unlock_store, verify_key
from .tree import TreeOpts, construct_secrets
from .vault import Vault

# Constants
DEFAULT_STORE = Path.home() / ".safe" / "store.db"
SESSION_FILE = Path.home() / ".safe-session"
SESSION_TTL = 1800
AUDIT_RETENTION_DAYS = 30


def get_store_path(args_store=None):
    """Get store path from args, SAFE_STORE, or default."""
    if args_store:
        return Path(args_store)
    env_store = os.environ.get('SAFE_STORE')
    return Path(env_store) if env_store else DEFAULT_STORE


def get_audit_path(store_path):
    """Audit log lives beside the store it records."""
    return store_path.with_suffix(".log")


def get_password(prompt="Enter master password: "):
    """Get password from environment variable or prompt.

    Checks SAFE_PASSWORD environment variable first for automation/testing.
    Falls back to interactive getpass prompt if not set.
    """
    env_password = os.environ.get('SAFE_PASSWORD')
    if env_password:
        return env_password
    return getpass.getpass(prompt)


def set_permissions(path, mode=0o600):
    """Set file permissions."""
    os.chmod(path, mode)


def load_session(store_path):
    """Return the cached key for `store_path`, or None if there is no valid session."""
    if not SESSION_FILE.exists():
        return None

    try:
        with open(SESSION_FILE) as f:
            session = json.load(f)

        expires = datetime.fromisoformat(session['expires'])
        if datetime.now(timezone.utc) > expires:
            SESSION_FILE.unlink()
            return None

        if session.get('store') != str(store_path):
            return None

        return base64.b64decode(session['key'])
    except (json.JSONDecodeError, KeyError, ValueError):
        SESSION_FILE.unlink()
        return None


def open_audit_log(store_path):
    return AuditLogger(get_audit_path(store_path), AUDIT_RETENTION_DAYS)


def unlock(store_path):
    """Derive the store key from the master password, recording refusals."""
    try:
        return unlock_store(store_path, get_password())
    except StoreLocked:
        if store_path.exists():
            open_audit_log(store_path).record("UNLOCK", "", result="DENIED")
        raise


def get_key_or_unlock(store_path):
    """Get key from session or prompt for password.

    Raises:
        StoreLocked: If there is no session and no way to ask for a password

    """
    key = load_session(store_path)
    if key:
        verify_key(store_path, key)
        return key

    if os.environ.get('SAFE_PASSWORD') or sys.stdin.isatty():
        return unlock(store_path)

    raise StoreLocked("No active session. Run 'safe unlock' first.")


def connect(args):
    """Open the store named by `args` and wrap it in a Vault."""
    store_path = get_store_path(args.store)
    if not store_path.exists():
        raise StoreLocked(f"Store not found: {store_path}")

    key = get_key_or_unlock(store_path)
    return Vault(SecretStore(store_path, key, open_audit_log(store_path)))


def recursively(args, verb, path):
    """Confirm a recursive operation unless --force was given."""
    if args.force:
        return True
    answer = input(f"Recursively {verb} {path}? [y/N] ")
    return answer.strip().lower() in ('y', 'yes')


def info(args, message):
    """Print an advisory to stderr unless --quiet."""
    if not args.quiet:
        print(message, file=sys.stderr)


# ============================================================================
# Store and session commands
# ============================================================================

def cmd_init(args):
    """Create a new store file."""
    store_path = get_store_path(args.store)

    if store_path.exists():
        raise SafeError(f"Store already exists: {store_path}")

    password = get_password("Enter master password: ")
    confirm = get_password("Confirm master password: ")

    if password != confirm:
        raise SafeError("Passwords do not match")

    if not store_path.parent.exists():
        store_path.parent.mkdir(mode=0o700, parents=True)

    key = create_store(store_path, password=password)
    set_permissions(store_path)

    if not args.no_mount:
        SecretStore(store_path, key, open_audit_log(store_path)).mount("secret", version=2)

    print(f"Store created at {store_path}")


def cmd_unlock(args):
    """Unlock store and create session."""
    store_path = get_store_path(args.store)
    key = unlock(store_path)

    ttl = args.ttl if args.ttl else SESSION_TTL
    expires = datetime.now(timezone.utc).timestamp() + ttl

    session = {
        'key': base64.b64encode(key).decode('utf-8'),
        'expires': datetime.fromtimestamp(expires, tz=timezone.utc).isoformat(),
        'store': str(store_path),
    }

    with open(SESSION_FILE, 'w') as f:
        json.dump(session, f)
    set_permissions(SESSION_FILE)
    open_audit_log(store_path).record("UNLOCK", "", note=f"ttl={ttl}")

    print(f"Session active ({ttl} seconds)")


def cmd_lock(args):
    """Destroy the active session."""
    if SESSION_FILE.exists():
        SESSION_FILE.unlink()
        print("Session destroyed.")
    else:
        print("No active session.")


def cmd_mount(args):
    """Create a mount, or change how many versions it retains."""
    vault = connect(args)
    mount = vault.client.mount(args.name, version=args.kv_version, max_versions=args.max_versions)
    print(f"Mounted {mount.name}/ (kv v{mount.version})")


def cmd_mounts(args):
    """List mounts."""
    vault = connect(args)
    for mount in vault.client.mounts():
        retain = f"\tmax_versions={mount.max_versions}" if mount.max_versions else ""
        print(f"{mount.name}/\tv{mount.version}{retain}")


# ============================================================================
# Reading and writing
# ============================================================================

def parse_assignment(arg):
    """Split a `key=value`, `key@file` or bare `key` (prompted) argument."""
    if '=' in arg:
        return arg.split('=', 1)

    if '@' in arg:
        key, filename = arg.split('@', 1)
        if filename == '-':
            return key, sys.stdin.read()
        with open(filename) as f:
            return key, f.read()

    return arg, getpass.getpass(f"{arg} [hidden]: ")


def cmd_set(args):
    """Set one or more keys in a secret, keeping the keys already there."""
    vault = connect(args)
    path = canonicalize(args.path)

    try:
        secret = vault.read(path)
    except SecretNotFound:
        secret = Secret()

    for arg in args.pairs:
        key, value = parse_assignment(arg)
        secret.set(key, value, skip_if_exists=args.no_clobber)

    vault.write(path, secret)


def gen_targets(args):
    """Pair up `gen` arguments given as PATH:KEY or as PATH KEY."""
    targets = []
    args = list(args)
    while args:
        if path_has_key(args[0]):
            path, key, _ = parse_path(args.pop(0))
        else:
            if len(args) < 2:
                raise SafeError(f"no key given for secret `{args[0]}'")
            path, key = parse_path(args.pop(0))[0], args.pop(0)
            if path_has_key(key):
                raise SafeError(f"for secret `{path}' and key `{key}': key cannot contain a key")
        targets.append((canonicalize(path), key))
    return targets


def cmd_gen(args):
    """Generate random passwords into one or more keys."""
    targets = list(args.targets)
    length = args.length
    if length is None:
        length = DEFAULT_PASSWORD_LENGTH
        # A leading bare number is the length
        if targets and targets[0].isdigit():
            length = int(targets.pop(0))
    targets = gen_targets(targets)
    if not targets:
        raise SafeError("gen needs at least one PATH:KEY")

    vault = connect(args)
    for path, key in targets:
        try:
            secret = vault.read(path)
        except SecretNotFound:
            secret = Secret()

        if args.no_clobber and secret.has(key):
            info(args, f"Cowardly refusing to update {encode_path(path, key)} as it is already present")
            continue

        secret.password(key, length, args.policy)
        vault.write(path, secret)


def cmd_fmt(args):
    """Store an encoded copy of a key's value under a new key of the same secret."""
    vault = connect(args)
    path = canonicalize(args.path)
    secret = vault.read(path)

    if args.no_clobber and secret.has(args.new_key):
        info(args, f"Cowardly refusing to reformat {encode_path(path, args.old_key)} "
                   f"to {args.new_key} as it is already present")
        return
    if not secret.has(args.old_key):
        raise SafeError(f"{encode_path(path, args.old_key)} does not exist, cannot create "
                        f"{args.format} encoded copy at {encode_path(path, args.new_key)}")

    secret.format(args.old_key, args.new_key, args.format)
    vault.write(path, secret)


def cmd_get(args):
    """Print a secret, or just one key's value when the address names a key."""
    vault = connect(args)
    _, key, _ = parse_path(args.path)
    secret = vault.read(args.path)

    if key:
        print(secret.get(key))
    else:
        print(json.dumps(secret.to_dict(), indent=2, sort_keys=True))


def cmd_exists(args):
    """Exit 0 if the address holds readable data, 1 otherwise."""
    vault = connect(args)
    sys.exit(0 if vault.exists(args.path) else 1)


def cmd_ls(args):
    """List the names directly beneath a path."""
    vault = connect(args)
    for name in vault.list(args.path or ""):
        print(name)


def collect(vault, roots, opts):
    secrets = Secrets()
    for root in roots or [""]:
        secrets = secrets.merge(construct_secrets(vault, canonicalize(parse_path(root)[0]), opts))
    return secrets


def cmd_paths(args):
    """Print every secret (or every key, with --keys) beneath the given paths."""
    vault = connect(args)
    secrets = collect(vault, args.paths, TreeOpts(fetch_keys=args.keys))
    for path in secrets.paths():
        print(path)


def cmd_tree(args):
    """Display hierarchical structure."""
    vault = connect(args)
    paths = collect(vault, args.paths, TreeOpts()).secret_paths()

    if not paths:
        return

    # Build tree structure
    tree = {}
    for path in paths:
        node = tree
        for part in path.split('/'):
            node = node.setdefault(part, {})

    def print_tree(node, prefix=''):
        items = list(node.items())
        for i, (name, children) in enumerate(items):
            is_last_item = i == len(items) - 1
            connector = "└── " if is_last_item else "├── "
            print(f"{prefix}{connector}{name}")
            if children:
                print_tree(children, prefix + ("    " if is_last_item else "│   "))

    print_tree(tree)


def cmd_versions(args):
    """Show the retained versions of a secret and their state."""
    vault = connect(args)
    for record in vault.versions(parse_path(args.path)[0]):
        if record.destroyed:
            state = "destroyed"
        elif record.deleted:
            state = "deleted"
        else:
            state = "alive"
        print(f"{record.number}\t{state}\t{record.created or ''}")


def cmd_log(args):
    """Show recent audit events, optionally only those at or beneath a path."""
    store_path = get_store_path(args.store)
    if not store_path.exists():
        raise StoreLocked(f"Store not found: {store_path}")

    audit_log = open_audit_log(store_path)
    if args.files:
        for log_file in audit_log.get_log_files():
            print(log_file)
        return
    if args.raw:
        if args.path:
            raise SafeError("--raw cannot be limited to a path")
        for line in audit_log.read_recent(args.lines):
            print(line, end="")
        return

    for record in audit_log.records(args.path, args.lines):
        fields = [record.timestamp, record.result, record.action, record.path or "/"]
        if record.versions:
            fields.append(",".join(str(n) for n in record.versions))
        if record.note:
            fields.append(record.note)
        print("\t".join(fields))


# ============================================================================
# Mutations
# ============================================================================

def cmd_delete(args):
    """Delete (or destroy) secrets, versions or keys."""
    vault = connect(args)
    opts = DeleteOpts(destroy=args.destroy, all_versions=args.all)

    for address in args.paths:
        try:
            if args.recursive:
                if not recursively(args, "destroy" if args.destroy else "delete", address):
                    continue
                delete_tree(vault, address, opts)
            else:
                delete(vault, address, opts)
        except NotFoundError:
            if not args.force:
                raise


def cmd_undelete(args):
    """Bring soft-deleted versions back."""
    vault = connect(args)
    for address in args.paths:
        if args.all:
            undelete_all(vault, address)
        else:
            undelete(vault, address)


def cmd_revert(args):
    """Write an older version back as the newest one."""
    vault = connect(args)
    revert(vault, args.path, args.version, deleted=args.deleted)


def move_copy(args, op, verb):
    if args.deleted and not args.deep:
        raise SafeError("--deleted can only be used with --deep")

    vault = connect(args)
    opts = MoveCopyOpts(
        skip_if_exists=args.no_clobber,
        quiet=args.quiet,
        deep=args.deep,
        deleted_versions=args.deleted,
    )

    try:
        if args.recursive:
            if recursively(args, verb, args.src):
                move_copy_tree(vault, args.src, args.dst, op, opts)
        else:
            op(vault, args.src, args.dst, opts)
    except NotFoundError:
        if not args.force:
            raise


def cmd_copy(args):
    """Copy a secret, version or key."""
    move_copy(args, copy, "copy")


def cmd_move(args):
    """Move a secret or key."""
    move_copy(args, move, "move")


# ============================================================================
# Export / import
# ============================================================================

def cmd_export(args):
    """Dump secrets as JSON."""
    vault = connect(args)
    output = export_json(vault, args.paths or [""], ExportOpts(all_versions=args.all, deleted=args.deleted))

    if args.file:
        fd = os.open(args.file, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(output + "\n")
    else:
        print(output)


def cmd_import(args):
    """Load secrets from an export."""
    if args.no_clobber:
        raise SafeError("import does not support --no-clobber")

    vault = connect(args)
    if args.file:
        with open(args.file) as f:
            text = f.read()
    else:
        text = sys.stdin.read()

    opts = ImportOpts(ignore_destroyed=args.ignore_destroyed, ignore_deleted=args.ignore_deleted, shallow=args.shallow)
    count = import_json(vault, text, opts, log=lambda msg: info(args, msg))
    info(args, f"Imported {count} secret{'s' if count != 1 else ''}")


def build_parser():
    parser = argparse.ArgumentParser(
        prog='safe',
        description="Safe CLI - Hierarchical, versioned secret store"
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f"%(prog)s {version('safe-cli')}"
    )
    parser.add_argument('--store', help='Path to store file (default: $SAFE_STORE or ~/.safe/store.db)')
    parser.add_argument('-q', '--quiet', action='store_true', help='Suppress advisories on stderr')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # init
    init_parser = subparsers.add_parser('init', help='Create a new store')
    init_parser.add_argument('--no-mount', action='store_true', help="Don't create the default `secret' v2 mount")

    # unlock / lock
    unlock_parser = subparsers.add_parser('unlock', help='Unlock store and create session')
    unlock_parser.add_argument('--ttl', type=int, help=f'Session TTL in seconds (default: {SESSION_TTL})')
    subparsers.add_parser('lock', help='Destroy the active session')

    # mount / mounts
    mount_parser = subparsers.add_parser('mount', help='Create a mount')
    mount_parser.add_argument('name', help='Mount path')
    mount_parser.add_argument('--kv-version', type=int, choices=[1, 2], default=2, help='KV engine version (default: 2)')
    mount_parser.add_argument('--max-versions', type=int, default=0, help='Versions to retain per secret (0: unlimited)')
    subparsers.add_parser('mounts', help='List mounts')

    # set
    set_parser = subparsers.add_parser('set', help='Set keys in a secret')
    set_parser.add_argument('path', help='Secret path')
    set_parser.add_argument('pairs', nargs='+', help='key=value, key@file, or key (prompted)')
    set_parser.add_argument('--no-clobber', action='store_true', help="Don't overwrite existing keys")

    # gen / fmt
    gen_parser = subparsers.add_parser('gen', help='Generate random passwords')
    gen_parser.add_argument('targets', nargs='+', metavar='PATH:KEY', help='[LENGTH] PATH:KEY or PATH KEY, repeatable')
    gen_parser.add_argument('-l', '--length', type=int, help=f'Password length (default: {DEFAULT_PASSWORD_LENGTH})')
    gen_parser.add_argument('-p', '--policy', default=DEFAULT_PASSWORD_POLICY,
                            help=f'Regex character grouping to draw from (default: {DEFAULT_PASSWORD_POLICY})')
    gen_parser.add_argument('--no-clobber', action='store_true', help="Don't overwrite existing keys")
    fmt_parser = subparsers.add_parser('fmt', help='Store an encoded copy of a key under a new name')
    fmt_parser.add_argument('format', choices=sorted(FORMATS), help='Encoding to apply')
    fmt_parser.add_argument('path', help='Secret path')
    fmt_parser.add_argument('old_key', help='Key to read')
    fmt_parser.add_argument('new_key', help='Key to write')
    fmt_parser.add_argument('--no-clobber', action='store_true', help="Don't overwrite an existing new key")

    # get / exists
    get_parser = subparsers.add_parser('get', help='Print a secret or key')
    get_parser.add_argument('path', help='Address (path[:key][^version])')
    exists_parser = subparsers.add_parser('exists', help='Exit 0 if the address exists')
    exists_parser.add_argument('path', help='Address (path[:key][^version])')

    # ls / paths / tree / versions
    ls_parser = subparsers.add_parser('ls', help='List names beneath a path')
    ls_parser.add_argument('path', nargs='?', help='Folder path (default: list mounts)')
    paths_parser = subparsers.add_parser('paths', help='List secrets recursively')
    paths_parser.add_argument('paths', nargs='*', help='Root paths')
    paths_parser.add_argument('--keys', action='store_true', help='List each key as path:key')
    tree_parser = subparsers.add_parser('tree', help='Display hierarchical structure')
    tree_parser.add_argument('paths', nargs='*', help='Root paths')
    versions_parser = subparsers.add_parser('versions', help='Show version history of a secret')
    versions_parser.add_argument('path', help='Secret path')
    log_parser = subparsers.add_parser('log', help='Show recent audit events')
    log_parser.add_argument('path', nargs='?', help='Only events at or beneath this path')
    log_parser.add_argument('-n', '--lines', type=int, default=20, help='Number of events (default: 20)')
    log_parser.add_argument('--raw', action='store_true', help='Print log lines as written')
    log_parser.add_argument('--files', action='store_true', help='List current and rotated log files, newest first')

    # delete
    delete_parser = subparsers.add_parser('delete', aliases=['rm'], help='Delete secrets, versions or keys')
    delete_parser.add_argument('paths', nargs='+', help='Addresses to delete')
    delete_parser.add_argument('-r', '--recursive', action='store_true', help='Delete everything beneath each path')
    delete_parser.add_argument('-f', '--force', action='store_true', help="Don't confirm; ignore missing secrets")
    delete_parser.add_argument('-D', '--destroy', action='store_true', help='Destroy instead of soft-delete')
    delete_parser.add_argument('-a', '--all', action='store_true', help='Apply to every version')

    # undelete / revert
    undelete_parser = subparsers.add_parser('undelete', help='Restore soft-deleted versions')
    undelete_parser.add_argument('paths', nargs='+', help='Addresses (path[^version])')
    undelete_parser.add_argument('-a', '--all', action='store_true', help='Undelete every version')
    revert_parser = subparsers.add_parser('revert', help='Write an older version back as the newest')
    revert_parser.add_argument('path', help='Secret path')
    revert_parser.add_argument('version', type=int, help='Version to restore')
    revert_parser.add_argument('-d', '--deleted', action='store_true', help='Allow reverting to a deleted version')

    # copy / move
    for name, alias, verb in (('copy', 'cp', 'Copy'), ('move', 'mv', 'Move')):
        mc_parser = subparsers.add_parser(name, aliases=[alias], help=f'{verb} a secret, version or key')
        mc_parser.add_argument('src', help='Source address')
        mc_parser.add_argument('dst', help='Destination address')
        mc_parser.add_argument('-r', '--recursive', action='store_true', help='Apply to everything beneath src')
        mc_parser.add_argument('-f', '--force', action='store_true', help="Don't confirm; ignore missing secrets")
        mc_parser.add_argument('--no-clobber', action='store_true', help="Don't overwrite existing destinations")
        mc_parser.add_argument('--deep', action='store_true', help='Carry the whole version history')
        mc_parser.add_argument('--deleted', action='store_true', help='Also carry deleted versions (needs --deep)')

    # export / import
    export_parser = subparsers.add_parser('export', help='Export secrets as JSON')
    export_parser.add_argument('paths', nargs='*', help='Root paths (default: everything)')
    export_parser.add_argument('-a', '--all', action='store_true', help='Export every retained version')
    export_parser.add_argument('-d', '--deleted', action='store_true', help='Include deleted versions')
    export_parser.add_argument('--file', help='Write to file instead of stdout')
    import_parser = subparsers.add_parser('import', help='Import secrets from an export')
    import_parser.add_argument('--file', help='Read from file instead of stdin')
    import_parser.add_argument('-I', '--ignore-destroyed', action='store_true', help='Skip destroyed versions')
    import_parser.add_argument('-i', '--ignore-deleted', action='store_true', help='Skip deleted versions')
    import_parser.add_argument('-s', '--shallow', action='store_true', help='Import only the newest version')
    import_parser.add_argument('--no-clobber', action='store_true', help=argparse.SUPPRESS)

    return parser


COMMANDS = {
    'init': cmd_init,
    'unlock': cmd_unlock,
    'lock': cmd_lock,
    'mount': cmd_mount,
    'mounts': cmd_mounts,
    'set': cmd_set,
    'gen': cmd_gen,
    'fmt': cmd_fmt,
    'get': cmd_get,
    'exists': cmd_exists,
    'ls': cmd_ls,
    'paths': cmd_paths,
    'tree': cmd_tree,
    'versions': cmd_versions,
    'log': cmd_log,
    'delete': cmd_delete,
    'rm': cmd_delete,
    'undelete': cmd_undelete,
    'revert': cmd_revert,
    'copy': cmd_copy,
    'cp': cmd_copy,
    'move': cmd_move,
    'mv': cmd_move,
    'export': cmd_export,
    'import': cmd_import,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        COMMANDS[args.command](args)
    except SafeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
