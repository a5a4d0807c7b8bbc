import os

from jobwarden.lockfile import acquire_lock, lock_holder, release_lock


def test_acquire_lock_no_existing(tmp_path):
    lock_file = tmp_path / "scheduler.lock"
    assert acquire_lock(lock_file=lock_file) is True
    assert lock_file.exists()
    assert int(lock_file.read_text()) == os.getpid()


def test_acquire_lock_creates_parent_dir(tmp_path):
    lock_file = tmp_path / "nested" / "scheduler.lock"
    assert acquire_lock(lock_file=lock_file) is True
    assert lock_file.exists()


def test_acquire_lock_stale_pid(tmp_path):
    lock_file = tmp_path / "scheduler.lock"
    lock_file.write_text("99999999")
    assert acquire_lock(lock_file=lock_file) is True
    assert int(lock_file.read_text()) == os.getpid()


def test_acquire_lock_live_pid(tmp_path):
    lock_file = tmp_path / "scheduler.lock"
    lock_file.write_text(str(os.getpid()))
    assert acquire_lock(lock_file=lock_file) is False


def test_acquire_lock_invalid_content(tmp_path):
    lock_file = tmp_path / "scheduler.lock"
    lock_file.write_text("not-a-pid")
    assert acquire_lock(lock_file=lock_file) is True


def test_lock_holder(tmp_path):
    lock_file = tmp_path / "scheduler.lock"
    assert lock_holder(lock_file=lock_file) is None
    lock_file.write_text(str(os.getpid()))
    assert lock_holder(lock_file=lock_file) == os.getpid()
    lock_file.write_text("99999999")
    assert lock_holder(lock_file=lock_file) is None


def test_release_lock(tmp_path):
    lock_file = tmp_path / "scheduler.lock"
    lock_file.write_text(str(os.getpid()))
    release_lock(lock_file=lock_file)
    assert not lock_file.exists()


def test_release_lock_missing_file(tmp_path):
    lock_file = tmp_path / "scheduler.lock"
    release_lock(lock_file=lock_file)
