"""Tests for SecureBuffer: access through views, wiping and refusal to leak."""

import copy
import pickle

import pytest

from sealvault.secure_buffer import SecureBuffer, wipe_all


class TestAccess:
    """The secret is only reachable through use()."""

    def test_use_yields_content(self):
        buf = SecureBuffer(b"hunter2")
        with buf.use() as view:
            assert bytes(view) == b"hunter2"
        assert len(buf) == 7

    def test_str_is_utf8_encoded(self):
        buf = SecureBuffer("pässword")
        with buf.use() as view:
            assert bytes(view) == "pässword".encode("utf-8")

    def test_view_is_read_only(self):
        buf = SecureBuffer(b"secret")
        with buf.use() as view:
            with pytest.raises(TypeError):
                view[0] = 0

    def test_view_released_after_block(self):
        buf = SecureBuffer(b"secret")
        with buf.use() as view:
            pass
        with pytest.raises(ValueError):
            bytes(view)

    def test_bytearray_source_is_zeroed(self):
        source = bytearray(b"from-a-bytearray")
        buf = SecureBuffer(source)
        assert source == bytearray(len(source))
        with buf.use() as view:
            assert bytes(view) == b"from-a-bytearray"

    def test_empty_buffer(self):
        buf = SecureBuffer(b"")
        assert len(buf) == 0
        with buf.use() as view:
            assert bytes(view) == b""
        buf.wipe()
        assert buf.wiped

    def test_equality_compares_content(self):
        assert SecureBuffer(b"abc") == SecureBuffer(b"abc")
        assert SecureBuffer(b"abc") != SecureBuffer(b"abd")
        assert SecureBuffer(b"abc") != b"abc"


class TestWipe:
    """Wiping zeroes the storage and disables access."""

    def test_wipe_zeroes_storage(self):
        buf = SecureBuffer(b"top secret")
        storage = buf._data
        buf.wipe()
        assert storage == bytearray(len(b"top secret"))
        assert buf.wiped

    def test_use_after_wipe_fails(self):
        buf = SecureBuffer(b"x")
        buf.wipe()
        with pytest.raises(ValueError):
            with buf.use():
                pass

    def test_wipe_is_idempotent(self):
        buf = SecureBuffer(b"x")
        buf.wipe()
        buf.wipe()
        assert buf.wiped

    def test_context_manager_wipes(self):
        with SecureBuffer(b"scoped") as buf:
            storage = buf._data
            assert not buf.wiped
        assert buf.wiped
        assert storage == bytearray(6)

    def test_context_manager_wipes_on_error(self):
        with pytest.raises(RuntimeError):
            with SecureBuffer(b"scoped") as buf:
                raise RuntimeError("boom")
        assert buf.wiped

    def test_wipe_all_skips_none(self):
        a, b = SecureBuffer(b"a"), SecureBuffer(b"b")
        wipe_all(a, None, b)
        assert a.wiped and b.wiped


class TestNoLeaks:
    """Rendering, serializing, copying and hashing never expose the secret."""

    def test_repr_is_redacted(self):
        buf = SecureBuffer(b"hunter2")
        assert "hunter2" not in repr(buf)
        assert "hunter2" not in str(buf)
        assert "redacted" in repr(buf)

    def test_pickle_refused(self):
        with pytest.raises(TypeError):
            pickle.dumps(SecureBuffer(b"hunter2"))

    def test_copy_refused(self):
        buf = SecureBuffer(b"hunter2")
        with pytest.raises(TypeError):
            copy.copy(buf)
        with pytest.raises(TypeError):
            copy.deepcopy(buf)

    def test_hash_refused(self):
        with pytest.raises(TypeError):
            hash(SecureBuffer(b"hunter2"))
