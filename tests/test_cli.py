"""Tests for CLI commands and argument parsing."""

import argparse
import io
import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from safe_cli import main as main_module
from safe_cli.errors import NotASecret, SafeError, SecretNotFound, StoreLocked
from safe_cli.main import (
    build_parser,
    cmd_delete,
    cmd_import,
    cmd_init,
    cmd_lock,
    cmd_set,
    cmd_unlock,
    connect,
    gen_targets,
    get_audit_path,
    get_key_or_unlock,
    get_password,
    get_store_path,
    load_session,
    main,
    parse_assignment,
    recursively,
)
from safe_cli.secret import Secret
from safe_cli.store import SecretStore


def run(argv):
    """Run the CLI with a fixed version string; return the exit code (0 if none)."""
    with patch("safe_cli.main.version", return_value="1.0.0"):
        try:
            main(argv)
        except SystemExit as e:
            return e.code
    return 0


def store_args(password_store, **kwargs):
    defaults = dict(store=str(password_store["path"]), quiet=False, force=True, no_clobber=False)
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


class TestGetPassword:
    """Tests for get_password helper function."""

    def test_get_password_from_env(self):
        """Test that SAFE_PASSWORD env var is used when set."""
        with patch.dict(os.environ, {"SAFE_PASSWORD": "testpass123"}):
            assert get_password() == "testpass123"

    @patch("safe_cli.main.getpass.getpass")
    def test_get_password_fallback_to_getpass(self, mock_getpass):
        """Test fallback to getpass when env var not set."""
        mock_getpass.return_value = "manualpass"
        with patch.dict(os.environ, {}, clear=True):
            assert get_password("Enter password: ") == "manualpass"
            mock_getpass.assert_called_once_with("Enter password: ")

    @patch("safe_cli.main.getpass.getpass")
    def test_get_password_empty_env_uses_getpass(self, mock_getpass):
        """Test that empty env var falls back to getpass."""
        mock_getpass.return_value = "manualpass"
        with patch.dict(os.environ, {"SAFE_PASSWORD": ""}):
            assert get_password() == "manualpass"


class TestGetStorePath:
    """Tests for get_store_path function."""

    def test_from_arg(self):
        with patch.dict(os.environ, {"SAFE_STORE": "/env/store.db"}):
            assert get_store_path("/custom/store.db") == Path("/custom/store.db")

    def test_from_env(self):
        with patch.dict(os.environ, {"SAFE_STORE": "/env/store.db"}):
            assert get_store_path() == Path("/env/store.db")

    def test_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_store_path() == main_module.DEFAULT_STORE

    def test_audit_path_beside_store(self):
        assert get_audit_path(Path("/x/store.db")) == Path("/x/store.log")


class TestSession:
    """Tests for unlock, lock and session loading."""

    def test_unlock_writes_session(self, password_store):
        cmd_unlock(store_args(password_store, ttl=60))

        session_file = main_module.SESSION_FILE
        assert oct(session_file.stat().st_mode)[-3:] == "600"
        assert load_session(password_store["path"]) == password_store["key"]

    def test_session_for_other_store_ignored(self, password_store, temp_dir):
        cmd_unlock(store_args(password_store, ttl=60))

        assert load_session(temp_dir / "other.db") is None

    def test_expired_session_removed(self, password_store):
        expired = datetime.now(timezone.utc) - timedelta(seconds=1)
        main_module.SESSION_FILE.write_text(json.dumps({
            "key": "AAAA", "expires": expired.isoformat(), "store": str(password_store["path"]),
        }))

        assert load_session(password_store["path"]) is None
        assert not main_module.SESSION_FILE.exists()

    def test_corrupt_session_removed(self, password_store):
        main_module.SESSION_FILE.write_text("{not json")

        assert load_session(password_store["path"]) is None
        assert not main_module.SESSION_FILE.exists()

    def test_lock(self, password_store, capsys):
        cmd_unlock(store_args(password_store, ttl=60))
        cmd_lock(store_args(password_store))

        assert not main_module.SESSION_FILE.exists()
        assert "Session destroyed." in capsys.readouterr().out

    def test_no_password_no_tty(self, password_store, monkeypatch):
        monkeypatch.delenv("SAFE_PASSWORD")
        monkeypatch.setattr("sys.stdin", io.StringIO())

        with pytest.raises(StoreLocked, match="safe unlock"):
            get_key_or_unlock(password_store["path"])

    def test_session_used_without_password(self, password_store, monkeypatch):
        cmd_unlock(store_args(password_store, ttl=60))
        monkeypatch.delenv("SAFE_PASSWORD")
        monkeypatch.setattr("sys.stdin", io.StringIO())

        assert get_key_or_unlock(password_store["path"]) == password_store["key"]

    def test_connect_missing_store(self, password_store, temp_dir):
        with pytest.raises(StoreLocked, match="not found"):
            connect(argparse.Namespace(store=str(temp_dir / "missing.db")))


class TestCmdInit:
    """Tests for cmd_init function."""

    def test_creates_store_with_default_mount(self, password_store, temp_dir):
        store_path = temp_dir / "sub" / "new.db"
        cmd_init(argparse.Namespace(store=str(store_path), no_mount=False))

        assert oct(store_path.stat().st_mode)[-3:] == "600"
        key = get_key_or_unlock(store_path)
        assert [(m.name, m.version) for m in SecretStore(store_path, key).mounts()] == [("secret", 2)]

    def test_no_mount(self, password_store, temp_dir):
        store_path = temp_dir / "new.db"
        cmd_init(argparse.Namespace(store=str(store_path), no_mount=True))

        key = get_key_or_unlock(store_path)
        assert SecretStore(store_path, key).mounts() == []

    @patch("safe_cli.main.get_password")
    def test_password_mismatch(self, mock_get_password, temp_dir):
        mock_get_password.side_effect = ["password1", "password2"]

        with pytest.raises(SafeError, match="do not match"):
            cmd_init(argparse.Namespace(store=str(temp_dir / "new.db"), no_mount=False))

    def test_store_exists(self, password_store):
        with pytest.raises(SafeError, match="already exists"):
            cmd_init(store_args(password_store, no_mount=False))


class TestParseAssignment:
    """Tests for key=value argument parsing."""

    def test_key_value(self):
        assert tuple(parse_assignment("user=admin=1")) == ("user", "admin=1")

    def test_from_file(self, temp_dir):
        path = temp_dir / "cert.pem"
        path.write_text("PEM")

        assert parse_assignment(f"cert@{path}") == ("cert", "PEM")

    @patch("safe_cli.main.getpass.getpass")
    def test_prompted(self, mock_getpass):
        mock_getpass.return_value = "hidden"

        assert parse_assignment("password") == ("password", "hidden")


class TestCmdSet:
    """Tests for cmd_set function."""

    def test_merges_with_existing(self, password_store):
        cmd_set(store_args(password_store, path="secret/db", pairs=["user=u"]))
        cmd_set(store_args(password_store, path="secret/db", pairs=["pass=p"]))

        vault = connect(store_args(password_store))
        assert vault.read("secret/db").to_dict() == {"user": "u", "pass": "p"}

    def test_no_clobber(self, password_store):
        cmd_set(store_args(password_store, path="secret/db", pairs=["user=u"]))

        with pytest.raises(SafeError, match="already existed"):
            cmd_set(store_args(password_store, path="secret/db", pairs=["user=x"], no_clobber=True))


class TestGenTargets:
    """Tests for pairing up gen arguments."""

    def test_path_key_forms(self):
        assert gen_targets(["secret/a:pass", "/secret/b/", "pass"]) == [("secret/a", "pass"), ("secret/b", "pass")]

    def test_escaped_colon_needs_separate_key(self):
        assert gen_targets(["secret/a\\:b", "pass"]) == [("secret/a:b", "pass")]

    def test_missing_key(self):
        with pytest.raises(SafeError, match="no key given"):
            gen_targets(["secret/a:pass", "secret/b"])

    def test_key_with_key(self):
        with pytest.raises(SafeError, match="key cannot contain a key"):
            gen_targets(["secret/a", "secret/b:pass"])


class TestRecursively:
    """Tests for the recursive confirmation prompt."""

    def test_force_skips_prompt(self):
        with patch("builtins.input") as mock_input:
            assert recursively(argparse.Namespace(force=True), "delete", "secret/a")
            mock_input.assert_not_called()

    @pytest.mark.parametrize("answer,expected", [("y", True), ("YES", True), ("n", False), ("", False)])
    def test_prompt(self, answer, expected):
        with patch("builtins.input", return_value=answer):
            assert recursively(argparse.Namespace(force=False), "delete", "secret/a") is expected


class TestCmdDelete:
    """Tests for cmd_delete function."""

    def delete_args(self, password_store, paths, **kwargs):
        defaults = dict(paths=paths, recursive=False, destroy=False, all=False)
        defaults.update(kwargs)
        return store_args(password_store, **defaults)

    def test_force_ignores_missing(self, password_store):
        cmd_delete(self.delete_args(password_store, ["secret/nothing"], force=True))

    def test_missing_without_force(self, password_store):
        with pytest.raises(SecretNotFound):
            cmd_delete(self.delete_args(password_store, ["secret/nothing"], force=False))

    def test_force_does_not_hide_folder(self, password_store):
        connect(store_args(password_store)).write("secret/app/db", Secret({"a": "b"}))

        with pytest.raises(NotASecret):
            cmd_delete(self.delete_args(password_store, ["secret/app"], force=True))

    def test_recursive_declined(self, password_store):
        vault = connect(store_args(password_store))
        vault.write("secret/app/db", Secret({"a": "b"}))

        with patch("builtins.input", return_value="n"):
            cmd_delete(self.delete_args(password_store, ["secret/app"], recursive=True, force=False))

        assert vault.exists("secret/app/db")

    def test_recursive(self, password_store):
        vault = connect(store_args(password_store))
        vault.write("secret/app/db", Secret({"a": "b"}))

        cmd_delete(self.delete_args(password_store, ["secret/app"], recursive=True))

        assert not vault.exists("secret/app/db")


class TestCmdImport:
    """Tests for cmd_import function."""

    def test_refuses_no_clobber(self, password_store):
        args = store_args(password_store, no_clobber=True, file=None,
                          ignore_destroyed=False, ignore_deleted=False, shallow=False)

        with pytest.raises(SafeError, match="no-clobber"):
            cmd_import(args)


class TestParser:
    """Tests for argument parsing."""

    def parse(self, argv):
        with patch("safe_cli.main.version", return_value="1.0.0"):
            return build_parser().parse_args(argv)

    def test_global_options(self):
        args = self.parse(["--store", "/x.db", "-q", "ls"])

        assert args.store == "/x.db"
        assert args.quiet
        assert args.command == "ls"

    def test_aliases(self):
        assert self.parse(["rm", "secret/a"]).command == "rm"
        assert self.parse(["cp", "secret/a", "secret/b"]).command == "cp"
        assert self.parse(["mv", "secret/a", "secret/b"]).command == "mv"

    def test_copy_flags(self):
        args = self.parse(["copy", "-rf", "--deep", "--deleted", "--no-clobber", "secret/a", "secret/b"])

        assert args.recursive and args.force and args.deep and args.deleted and args.no_clobber

    def test_mount_version_choices(self):
        with pytest.raises(SystemExit):
            self.parse(["mount", "kv", "--kv-version", "3"])


class TestMain:
    """End-to-end runs through main()."""

    def test_no_command(self, capsys):
        assert run([]) == 1

    def test_set_get(self, password_store, capsys):
        store = str(password_store["path"])
        assert run(["--store", store, "set", "secret/db", "user=admin", "pass=hunter2"]) == 0
        capsys.readouterr()

        assert run(["--store", store, "get", "secret/db:pass"]) == 0
        assert capsys.readouterr().out == "hunter2\n"

        assert run(["--store", store, "get", "secret/db"]) == 0
        assert json.loads(capsys.readouterr().out) == {"pass": "hunter2", "user": "admin"}

    def test_error_exit(self, password_store, capsys):
        assert run(["--store", str(password_store["path"]), "get", "secret/nothing"]) == 1
        assert capsys.readouterr().err.startswith("Error: ")

    def test_exists(self, password_store):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/db", "user=admin"])

        assert run(["--store", store, "exists", "secret/db:user"]) == 0
        assert run(["--store", store, "exists", "secret/db:pass"]) == 1

    def test_paths_and_tree(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/app/db", "user=u", "pass=p"])
        run(["--store", store, "set", "secret/top", "k=v"])
        capsys.readouterr()

        run(["--store", store, "paths", "secret"])
        assert capsys.readouterr().out.split() == ["secret/app/db", "secret/top"]

        run(["--store", store, "paths", "--keys", "secret/app"])
        assert capsys.readouterr().out.split() == ["secret/app/db:pass", "secret/app/db:user"]

        run(["--store", store, "tree"])
        assert "└── top" in capsys.readouterr().out

    def test_versions_and_revert(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/db", "v=1"])
        run(["--store", store, "set", "secret/db", "v=2"])
        run(["--store", store, "rm", "secret/db^1"])
        capsys.readouterr()

        run(["--store", store, "versions", "secret/db"])
        states = [line.split("\t")[:2] for line in capsys.readouterr().out.splitlines()]
        assert states == [["1", "deleted"], ["2", "alive"]]

        assert run(["--store", store, "revert", "-d", "secret/db", "1"]) == 0
        run(["--store", store, "get", "secret/db:v"])
        assert capsys.readouterr().out == "1\n"

    def test_copy_no_clobber(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/a", "v=new"])
        run(["--store", store, "set", "secret/b", "v=old"])
        capsys.readouterr()

        assert run(["--store", store, "cp", "--no-clobber", "secret/a", "secret/b"]) == 0
        assert "Cowardly refusing" in capsys.readouterr().err

        assert run(["--store", store, "-q", "cp", "--no-clobber", "secret/a", "secret/b"]) == 0
        assert capsys.readouterr().err == ""

    def test_deleted_requires_deep(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/a", "v=1"])

        assert run(["--store", store, "cp", "--deleted", "secret/a", "secret/b"]) == 1
        assert "--deep" in capsys.readouterr().err

    def test_recursive_move(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/app/db", "v=1"])
        run(["--store", store, "set", "secret/app/api", "v=2"])

        assert run(["--store", store, "mv", "-rf", "secret/app", "secret/new"]) == 0
        capsys.readouterr()

        run(["--store", store, "paths", "secret"])
        assert capsys.readouterr().out.split() == ["secret/new/api", "secret/new/db"]

    def test_export_import(self, password_store, temp_dir, capsys):
        store = str(password_store["path"])
        export_file = temp_dir / "export.json"
        run(["--store", store, "set", "secret/db", "v=1"])
        run(["--store", store, "set", "secret/db", "v=2"])

        assert run(["--store", store, "export", "--all", "--file", str(export_file), "secret"]) == 0
        assert oct(export_file.stat().st_mode)[-3:] == "600"
        assert json.loads(export_file.read_text())[0]["export_version"] == 2

        run(["--store", store, "rm", "-rfDa", "secret/db"])
        capsys.readouterr()

        assert run(["--store", store, "import", "--file", str(export_file)]) == 0
        err = capsys.readouterr().err
        assert "wrote secret/db" in err
        assert "Imported 1 secret" in err

        run(["--store", store, "versions", "secret/db"])
        assert len(capsys.readouterr().out.splitlines()) == 2

    def test_import_from_stdin(self, password_store, monkeypatch, capsys):
        store = str(password_store["path"])
        monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps({"secret/x": {"k": "v"}})))

        assert run(["--store", store, "-q", "import"]) == 0
        assert capsys.readouterr().err == ""

        run(["--store", store, "get", "secret/x:k"])
        assert capsys.readouterr().out == "v\n"

    def test_log(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/db", "v=1"])
        run(["--store", store, "set", "secret/other", "v=1"])
        run(["--store", store, "rm", "secret/db"])
        capsys.readouterr()

        assert run(["--store", store, "log", "secret/db"]) == 0
        rows = [line.split("\t")[1:] for line in capsys.readouterr().out.splitlines()]
        assert rows == [["OK", "WRITE", "secret/db", "1"], ["OK", "DELETE", "secret/db", "1"]]

    def test_unlock_attempts_logged(self, password_store, monkeypatch, capsys):
        store = str(password_store["path"])
        assert run(["--store", store, "unlock", "--ttl", "60"]) == 0
        monkeypatch.setenv("SAFE_PASSWORD", "wrong")
        assert run(["--store", store, "unlock"]) == 1
        assert "Invalid password" in capsys.readouterr().err

        run(["--store", store, "log", "-n", "2"])
        rows = [line.split("\t")[1:] for line in capsys.readouterr().out.splitlines()]
        assert rows == [["OK", "UNLOCK", "/", "ttl=60"], ["DENIED", "UNLOCK", "/"]]

    def test_mounts(self, password_store, capsys):
        store = str(password_store["path"])
        assert run(["--store", store, "mount", "kv", "--kv-version", "1"]) == 0
        capsys.readouterr()

        run(["--store", store, "mounts"])
        out = capsys.readouterr().out
        assert "kv/\tv1" in out
        assert "secret/\tv2" in out

        run(["--store", store, "ls"])
        assert capsys.readouterr().out.split() == ["kv/", "secret/"]

    def test_gen(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/db", "user=admin"])

        assert run(["--store", store, "gen", "-l", "24", "-p", "a-f", "secret/db:pass"]) == 0
        run(["--store", store, "get", "secret/db:pass"])
        value = capsys.readouterr().out.strip()
        assert len(value) == 24
        assert set(value) <= set("abcdef")

        run(["--store", store, "get", "secret/db:user"])
        assert capsys.readouterr().out == "admin\n"

    def test_gen_length_argument(self, password_store, capsys):
        store = str(password_store["path"])
        assert run(["--store", store, "gen", "12", "secret/new", "token", "secret/other:token"]) == 0

        for path in ("secret/new:token", "secret/other:token"):
            run(["--store", store, "get", path])
            assert len(capsys.readouterr().out.strip()) == 12

    def test_gen_default_length(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "gen", "secret/db:pass"])

        run(["--store", store, "get", "secret/db:pass"])
        assert len(capsys.readouterr().out.strip()) == 64

    def test_gen_no_clobber(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/db", "pass=keep"])

        assert run(["--store", store, "gen", "--no-clobber", "secret/db:pass", "secret/db:other"]) == 0
        assert "Cowardly refusing to update secret/db:pass" in capsys.readouterr().err

        run(["--store", store, "get", "secret/db"])
        data = json.loads(capsys.readouterr().out)
        assert data["pass"] == "keep"
        assert len(data["other"]) == 64

    def test_fmt_base64(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/db", "pass=hunter2"])

        assert run(["--store", store, "fmt", "base64", "secret/db", "pass", "pass-b64"]) == 0
        run(["--store", store, "get", "secret/db:pass-b64"])
        assert capsys.readouterr().out == "aHVudGVyMg==\n"

    def test_fmt_no_clobber(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/db", "pass=hunter2", "out=keep"])

        assert run(["--store", store, "fmt", "--no-clobber", "base64", "secret/db", "pass", "out"]) == 0
        assert "Cowardly refusing to reformat secret/db:pass to out" in capsys.readouterr().err

        run(["--store", store, "get", "secret/db:out"])
        assert capsys.readouterr().out == "keep\n"

    def test_fmt_missing_key(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/db", "user=u"])

        assert run(["--store", store, "fmt", "base64", "secret/db", "pass", "out"]) == 1
        assert "secret/db:pass does not exist" in capsys.readouterr().err

    def test_fmt_unknown_format(self, password_store, capsys):
        assert run(["--store", str(password_store["path"]), "fmt", "rot13", "secret/db", "a", "b"]) == 2

    def test_log_raw_and_files(self, password_store, capsys):
        store = str(password_store["path"])
        run(["--store", store, "set", "secret/db", "v=1"])
        capsys.readouterr()

        assert run(["--store", store, "log", "--raw", "-n", "1"]) == 0
        line = capsys.readouterr().out
        assert line.endswith(" OK WRITE secret/db versions=1\n")

        assert run(["--store", store, "log", "--raw", "secret/db"]) == 1
        capsys.readouterr()

        assert run(["--store", store, "log", "--files"]) == 0
        assert capsys.readouterr().out == f"{get_audit_path(password_store['path'])}\n"
