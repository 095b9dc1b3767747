"""Tests for the per-vault session lock."""

import os
import threading
import time

import pytest

from sealvault.errors import VaultBusyError
from sealvault.locking import VaultLock


class TestVaultLock:

    def test_acquire_release(self, tmp_path):
        lock = VaultLock(tmp_path / "v.vault.lock")
        lock.acquire()
        assert lock.held
        lock.release()
        assert not lock.held

    def test_second_holder_fails_fast(self, tmp_path):
        path = tmp_path / "v.vault.lock"
        with VaultLock(path):
            with pytest.raises(VaultBusyError):
                VaultLock(path, timeout=0).acquire()

    def test_available_after_release(self, tmp_path):
        path = tmp_path / "v.vault.lock"
        with VaultLock(path):
            pass
        with VaultLock(path) as lock:
            assert lock.held

    def test_bounded_wait_succeeds_when_released(self, tmp_path):
        path = tmp_path / "v.vault.lock"
        first = VaultLock(path)
        first.acquire()
        timer = threading.Timer(0.2, first.release)
        timer.start()
        try:
            with VaultLock(path, timeout=5) as second:
                assert second.held
        finally:
            timer.join()

    def test_bounded_wait_gives_up(self, tmp_path):
        path = tmp_path / "v.vault.lock"
        with VaultLock(path):
            start = time.monotonic()
            with pytest.raises(VaultBusyError):
                VaultLock(path, timeout=0.3).acquire()
            assert time.monotonic() - start >= 0.3

    def test_release_without_acquire(self, tmp_path):
        VaultLock(tmp_path / "v.vault.lock").release()

    @pytest.mark.skipif(os.name != "posix", reason="open files cannot be unlinked on Windows")
    def test_waiter_follows_replaced_lock_file(self, tmp_path):
        """A waiter whose lock file was unlinked locks the file now at the path."""
        path = tmp_path / "v.vault.lock"
        first = VaultLock(path)
        first.acquire()
        results = {}

        def wait():
            with VaultLock(path, timeout=5) as second:
                results["current"] = os.fstat(second._fd).st_ino == os.stat(path).st_ino
                try:
                    VaultLock(path).acquire()
                    results["exclusive"] = False
                except VaultBusyError:
                    results["exclusive"] = True

        waiter = threading.Thread(target=wait)
        waiter.start()
        time.sleep(0.3)
        os.unlink(path)
        first.release()
        waiter.join(timeout=10)
        assert results == {"current": True, "exclusive": True}
