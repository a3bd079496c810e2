import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from canvasgate.service.fs import PathTraversalError, safe_join, scratch_file, scratch_file_async


def test_safe_join_accepts_child_path(tmp_path: Path):
    base = tmp_path
    result = safe_join(base, "nested/file.txt")

    assert base.resolve() in result.parents


def test_safe_join_rejects_traversal(tmp_path: Path):
    base = tmp_path

    with pytest.raises(PathTraversalError):
        safe_join(base, os.path.join("..", "escape.txt"))


def test_safe_join_rejects_absolute(tmp_path: Path):
    base = tmp_path

    with pytest.raises(PathTraversalError):
        safe_join(base, str(Path("/tmp/absolute.txt")))


def test_scratch_file_writes_and_removes(tmp_path: Path):
    with scratch_file(b"payload", suffix="png", directory=tmp_path) as path:
        assert path.exists()
        assert path.suffix == ".png"
        assert path.read_bytes() == b"payload"

    assert not path.exists()


def test_scratch_file_removed_when_block_raises(tmp_path: Path):
    seen = {}

    with pytest.raises(RuntimeError):
        with scratch_file(b"payload", suffix=".jpg", directory=tmp_path) as path:
            seen["path"] = path
            raise RuntimeError("provider failed")

    assert not seen["path"].exists()
    assert list(tmp_path.iterdir()) == []


def test_scratch_file_tolerates_early_deletion(tmp_path: Path):
    with scratch_file(b"payload", directory=tmp_path) as path:
        path.unlink()

    assert not path.exists()


async def test_scratch_file_async_writes_and_removes(tmp_path: Path):
    async with scratch_file_async(b"payload", suffix="webp", directory=tmp_path) as path:
        assert path.suffix == ".webp"
        assert path.read_bytes() == b"payload"

    assert not path.exists()


async def test_scratch_file_async_removed_when_block_raises(tmp_path: Path):
    with pytest.raises(RuntimeError):
        async with scratch_file_async(b"payload", directory=tmp_path):
            raise RuntimeError("provider failed")

    assert list(tmp_path.iterdir()) == []


async def test_scratch_file_async_runs_io_in_worker_thread(tmp_path: Path):
    import threading

    loop_thread = threading.get_ident()
    writer_threads = []
    real_mkstemp = tempfile.mkstemp

    def recording_mkstemp(*args, **kwargs):
        writer_threads.append(threading.get_ident())
        return real_mkstemp(*args, **kwargs)

    with patch("canvasgate.service.fs.tempfile.mkstemp", side_effect=recording_mkstemp):
        async with scratch_file_async(b"payload", directory=tmp_path):
            pass

    assert writer_threads and writer_threads[0] != loop_thread
