"""Tests for atomic writes, permission handling and secure purge."""

import os
import stat
from types import SimpleNamespace

import pytest

from sealvault import utils


class TestAtomicWrite:

    def test_creates_owner_only_file(self, tmp_path):
        target = tmp_path / "blob"
        utils.atomic_write(target, b"content")
        assert target.read_bytes() == b"content"
        if os.name == "posix":
            assert stat.S_IMODE(os.stat(target).st_mode) == 0o600

    def test_replaces_existing(self, tmp_path):
        target = tmp_path / "blob"
        target.write_bytes(b"old")
        utils.atomic_write(target, bytearray(b"new"))
        assert target.read_bytes() == b"new"

    def test_verify_sees_new_content(self, tmp_path):
        target = tmp_path / "blob"
        seen = []
        utils.atomic_write(target, b"new", verify=lambda tmp: seen.append(tmp.read_bytes()))
        assert seen == [b"new"]

    def test_verify_failure_keeps_target(self, tmp_path):
        target = tmp_path / "blob"
        target.write_bytes(b"old")

        def reject(tmp):
            raise ValueError("bad artifact")

        with pytest.raises(ValueError):
            utils.atomic_write(target, b"new", verify=reject)
        assert target.read_bytes() == b"old"
        assert [p.name for p in tmp_path.iterdir()] == ["blob"]

    def test_replace_failure_removes_temp(self, tmp_path, monkeypatch):
        target = tmp_path / "blob"
        target.write_bytes(b"old")

        def fail_replace(src, dst):
            raise OSError("simulated")

        monkeypatch.setattr(utils.os, "replace", fail_replace)
        with pytest.raises(OSError):
            utils.atomic_write(target, b"new")
        monkeypatch.undo()
        assert target.read_bytes() == b"old"
        assert [p.name for p in tmp_path.iterdir()] == ["blob"]


class TestSecurePurge:
    """Purge overwrites file content before unlinking it."""

    def _tree(self, root):
        (root / "a").mkdir(parents=True)
        (root / "accounts").write_bytes(b"a\n")
        (root / "a" / "data").write_bytes(b'{"username": "u", "password": "cHc="}')
        return root

    def test_removes_everything(self, tmp_path):
        root = self._tree(tmp_path / "tree")
        assert utils.secure_purge(root) == []
        assert not root.exists()

    def test_every_file_overwritten(self, tmp_path, monkeypatch):
        root = self._tree(tmp_path / "tree")
        overwritten = []
        original = utils.overwrite_file

        def recording(path):
            original(path)
            with open(path, "rb") as fh:
                overwritten.append(fh.read())

        monkeypatch.setattr(utils, "overwrite_file", recording)
        utils.secure_purge(root)
        assert len(overwritten) == 2
        assert all(data == bytes(len(data)) for data in overwritten)

    def test_overwrite_failure_falls_back_to_unlink(self, tmp_path, monkeypatch, caplog):
        root = self._tree(tmp_path / "tree")

        def fail(path):
            raise OSError("read-only medium")

        monkeypatch.setattr(utils, "overwrite_file", fail)
        warnings = utils.secure_purge(root)
        assert len(warnings) == 2
        assert not root.exists()
        assert "falling back to unlink" in caplog.text

    def test_missing_path(self, tmp_path):
        assert utils.secure_purge(tmp_path / "nothing") == []

    def test_single_file(self, tmp_path):
        target = tmp_path / "secret"
        target.write_bytes(b"plaintext")
        utils.secure_purge(target)
        assert not target.exists()

    def test_overwrite_file_zeroes(self, tmp_path):
        target = tmp_path / "secret"
        target.write_bytes(b"plaintext" * 10000)
        utils.overwrite_file(target)
        assert target.read_bytes() == bytes(90000)


class TestPermissions:

    @pytest.mark.skipif(os.name != "posix", reason="POSIX modes")
    def test_ensure_private_dir(self, tmp_path):
        path = utils.ensure_private_dir(tmp_path / "a" / "b")
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o700

    @pytest.mark.skipif(os.name != "posix", reason="POSIX modes")
    def test_restrict_file(self, tmp_path):
        target = tmp_path / "f"
        target.write_bytes(b"x")
        os.chmod(target, 0o644)
        assert utils.restrict_permissions(target)
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o600


class FakeWin32Error(Exception):
    pass


class FakeAcl:

    def __init__(self):
        self.aces = []

    def AddAccessAllowedAce(self, revision, mask, sid):
        self.aces.append((revision, mask, sid))


class TestWindowsPermissions:
    """DACL hardening, run against stand-ins for the pywin32 modules."""

    @pytest.fixture
    def win32(self, monkeypatch):
        calls = []

        def create_file(path, access, share, attributes, disposition, flags, template):
            calls.append(("open", path, access, flags))
            return "handle"

        def set_security_info(handle, object_type, info, owner, group, dacl, sacl):
            calls.append(("set", handle, info, dacl))

        modules = {
            "win32api": SimpleNamespace(GetUserName=lambda: "alice", error=FakeWin32Error),
            "win32security": SimpleNamespace(
                LookupAccountName=lambda system, name: (f"SID-{name}", "DOMAIN", 1),
                ACL=FakeAcl,
                ACL_REVISION=2,
                SE_FILE_OBJECT=1,
                DACL_SECURITY_INFORMATION=0x4,
                PROTECTED_DACL_SECURITY_INFORMATION=0x80000000,
                SetSecurityInfo=set_security_info,
            ),
            "win32con": SimpleNamespace(
                GENERIC_READ=0x80000000,
                GENERIC_WRITE=0x40000000,
                GENERIC_EXECUTE=0x20000000,
                DELETE=0x10000,
                WRITE_DAC=0x40000,
                OPEN_EXISTING=3,
            ),
            "win32file": SimpleNamespace(
                FILE_SHARE_READ=0x1,
                FILE_SHARE_WRITE=0x2,
                FILE_SHARE_DELETE=0x4,
                FILE_FLAG_BACKUP_SEMANTICS=0x02000000,
                CreateFile=create_file,
                CloseHandle=lambda handle: calls.append(("close", handle)),
            ),
        }
        for name, module in modules.items():
            monkeypatch.setattr(utils, name, module, raising=False)
        monkeypatch.setattr(utils, "WINDOWS_SECURITY_AVAILABLE", True)
        monkeypatch.setattr(utils.platform, "system", lambda: "Windows")
        return SimpleNamespace(calls=calls, modules=modules)

    def test_owner_only_dacl(self, tmp_path, win32):
        target = tmp_path / "f"
        target.write_bytes(b"x")
        assert utils.restrict_permissions(target) is True

        kinds = [call[0] for call in win32.calls]
        assert kinds == ["open", "set", "close"]
        _, path, access, flags = win32.calls[0]
        assert path == str(target)
        assert access == 0x40000
        assert flags == 0x02000000
        _, handle, info, dacl = win32.calls[1]
        assert handle == "handle"
        assert info == 0x4 | 0x80000000
        assert dacl.aces == [(2, 0x80000000 | 0x40000000 | 0x20000000 | 0x10000, "SID-alice")]

    def test_failure_closes_handle(self, tmp_path, win32, caplog):
        def refuse(*args):
            raise FakeWin32Error("access denied")

        win32.modules["win32security"].SetSecurityInfo = refuse
        assert utils.restrict_permissions(tmp_path) is False
        assert win32.calls[-1] == ("close", "handle")
        assert "Failed to restrict Windows permissions" in caplog.text

    def test_without_pywin32(self, tmp_path, win32, monkeypatch, caplog):
        monkeypatch.setattr(utils, "WINDOWS_SECURITY_AVAILABLE", False)
        assert utils.restrict_permissions(tmp_path) is False
        assert win32.calls == []
        assert "pywin32 not available" in caplog.text

    def test_private_dir_uses_dacl(self, tmp_path, win32):
        path = utils.ensure_private_dir(tmp_path / "a")
        assert path.is_dir()
        assert win32.calls[0][1] == str(path)
