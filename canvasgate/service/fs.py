import asyncio
import os
import tempfile
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import AsyncIterator, Iterator, Optional

from canvasgate.logging import get_logger

logger = get_logger(__name__)


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


@contextmanager
def scratch_file(
    data: bytes,
    suffix: str = "",
    *,
    prefix: str = "canvasgate_",
    directory: Optional[Path] = None,
) -> Iterator[Path]:
    """Write ``data`` to a private temporary file and yield its path.

    The file is removed when the block exits, whether it returns normally,
    raises, or is cancelled.
    """
    if suffix and not suffix.startswith("."):
        suffix = f".{suffix}"
    fd, name = tempfile.mkstemp(suffix=suffix, prefix=prefix, dir=directory)
    path = Path(name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("scratch_file_cleanup_failed", path=str(path), error=str(exc))


@asynccontextmanager
async def scratch_file_async(
    data: bytes,
    suffix: str = "",
    *,
    prefix: str = "canvasgate_",
    directory: Optional[Path] = None,
) -> AsyncIterator[Path]:
    """``scratch_file`` with the write and the cleanup run in a worker thread."""
    manager = scratch_file(data, suffix, prefix=prefix, directory=directory)
    path = await asyncio.to_thread(manager.__enter__)
    try:
        yield path
    finally:
        await asyncio.to_thread(manager.__exit__, None, None, None)
