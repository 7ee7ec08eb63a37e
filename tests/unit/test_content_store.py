"""Tests for ContentStore — layout, reservations, atomic publish, removal."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from stowage.core.content_store import ContentStore, ReservationError, remove_tree
from stowage.core.hasher import tree_hash

TREE = "43563e7631a7eafae1f9f8d9d332e3de44ad7239"


def _populate(path: Path) -> None:
    (path / "data.txt").write_text("content\n")


class TestLayout:
    def test_path_is_root_plus_hash(self, store: ContentStore):
        assert store.path(TREE) == store.root / TREE

    def test_path_normalizes_case(self, store: ContentStore):
        assert store.path(TREE.upper()) == store.root / TREE

    def test_path_rejects_bad_hash(self, store: ContentStore):
        with pytest.raises(ValueError):
            store.path("../etc")

    def test_path_does_not_create(self, store: ContentStore):
        store.path(TREE)
        assert store.exists(TREE) is False

    def test_internal_dirs_created(self, store: ContentStore):
        assert (store.root / ".locks").is_dir()
        assert (store.root / ".staging").is_dir()


class TestReserve:
    def test_publish_staged_content(self, store: ContentStore):
        with store.reserve(TREE) as reservation:
            assert reservation.already_present is False
            _populate(reservation.staging_dir)
            target = reservation.publish()
        assert target == store.path(TREE)
        assert store.exists(TREE)
        assert (target / "data.txt").read_text() == "content\n"

    def test_unpublished_content_discarded(self, store: ContentStore):
        with store.reserve(TREE) as reservation:
            _populate(reservation.staging_dir)
        assert store.exists(TREE) is False
        assert list((store.root / ".staging").iterdir()) == []

    def test_exception_discards_and_propagates(self, store: ContentStore):
        with pytest.raises(RuntimeError, match="boom"):
            with store.reserve(TREE) as reservation:
                _populate(reservation.staging_dir)
                raise RuntimeError("boom")
        assert store.exists(TREE) is False
        assert list((store.root / ".staging").iterdir()) == []

    def test_reset_gives_empty_directory(self, store: ContentStore):
        with store.reserve(TREE) as reservation:
            first = reservation.staging_dir
            _populate(first)
            second = reservation.reset()
            assert second != first
            assert not first.exists()
            assert list(second.iterdir()) == []

    def test_publish_external_source(self, store: ContentStore):
        scratch = store.make_scratch_dir()
        _populate(scratch)
        with store.reserve(TREE) as reservation:
            reservation.publish(scratch)
        assert not scratch.exists()
        assert (store.path(TREE) / "data.txt").exists()

    def test_already_present_after_publish(self, store: ContentStore):
        with store.reserve(TREE) as reservation:
            _populate(reservation.staging_dir)
            reservation.publish()
        with store.reserve(TREE) as reservation:
            assert reservation.already_present is True
            with pytest.raises(ReservationError):
                reservation.publish()

    def test_double_publish_rejected(self, store: ContentStore):
        with store.reserve(TREE) as reservation:
            reservation.publish()
            with pytest.raises(ReservationError):
                reservation.publish()

    def test_lock_timeout(self, tmp_path: Path):
        holder = ContentStore(tmp_path / "depot", lock_timeout=30)
        waiter = ContentStore(tmp_path / "depot", lock_timeout=0.05)
        with holder.reserve(TREE):
            with pytest.raises(ReservationError, match="Timed out"):
                with waiter.reserve(TREE):
                    pass

    def test_different_hashes_do_not_block(self, tmp_path: Path):
        store = ContentStore(tmp_path / "depot", lock_timeout=0.05)
        other = "0" * 40
        with store.reserve(TREE):
            with store.reserve(other) as reservation:
                reservation.publish()
        assert store.exists(other)


class TestVerifyAndList:
    def test_verify(self, store: ContentStore, tmp_path: Path):
        src = tmp_path / "src"
        src.mkdir()
        _populate(src)
        digest = tree_hash(src)
        with store.reserve(digest) as reservation:
            _populate(reservation.staging_dir)
            reservation.publish()
        assert store.verify(digest) is True
        (store.path(digest) / "data.txt").write_text("tampered\n")
        assert store.verify(digest) is False

    def test_verify_missing(self, store: ContentStore):
        assert store.verify(TREE) is False

    def test_list_hashes_ignores_internal_dirs(self, store: ContentStore):
        for digest in (TREE, "0" * 40):
            with store.reserve(digest) as reservation:
                reservation.publish()
        (store.root / "not-a-hash").mkdir()
        assert store.list_hashes() == ["0" * 40, TREE]


class TestRemove:
    def test_remove(self, store: ContentStore):
        with store.reserve(TREE) as reservation:
            _populate(reservation.staging_dir)
            reservation.publish()
        assert store.remove(TREE) is True
        assert store.exists(TREE) is False
        assert list((store.root / ".staging").iterdir()) == []

    def test_remove_missing(self, store: ContentStore):
        assert store.remove(TREE) is False


class TestCleanStaging:
    def test_removes_orphaned_staging(self, store: ContentStore):
        orphan = store.root / ".staging" / f"{TREE}.deadbeef"
        orphan.mkdir()
        _populate(orphan)
        assert store.clean_staging() == [orphan]
        assert not orphan.exists()

    def test_keeps_staging_of_live_reservation(self, store: ContentStore):
        with store.reserve(TREE) as reservation:
            live = reservation.staging_dir
            assert store.clean_staging() == []
            assert live.exists()

    def test_scratch_age_threshold(self, store: ContentStore):
        scratch = store.make_scratch_dir()
        assert store.clean_staging() == []
        assert store.clean_staging(scratch_max_age=0) == [scratch]


def _lock_down(directory: Path) -> None:
    """Create a read-only sub-directory holding a file."""
    locked = directory / "locked"
    locked.mkdir()
    (locked / "inner.txt").write_text("inner\n")
    locked.chmod(0o555)


@pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
class TestReadOnlyTrees:
    def test_remove_tree(self, tmp_path: Path):
        root = tmp_path / "tree"
        root.mkdir()
        _lock_down(root)
        (root / "locked").chmod(0o000)
        remove_tree(root)
        assert not root.exists()

    def test_discard_read_only_staging(self, store: ContentStore):
        with store.reserve(TREE) as reservation:
            _lock_down(reservation.staging_dir)
        assert list((store.root / ".staging").iterdir()) == []

    def test_remove_artifact_with_read_only_dir(self, store: ContentStore):
        with store.reserve(TREE) as reservation:
            _lock_down(reservation.staging_dir)
            reservation.publish()
        assert store.remove(TREE) is True
        assert not store.exists(TREE)
        assert list((store.root / ".staging").iterdir()) == []

    def test_clean_read_only_orphan(self, store: ContentStore):
        orphan = store.root / ".staging" / f"{TREE}.deadbeef"
        orphan.mkdir()
        _lock_down(orphan)
        assert store.clean_staging() == [orphan]
        assert not orphan.exists()
