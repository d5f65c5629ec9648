"""On-disk staging area for raw chunk payloads.

Chunks are stored in:    {staging_dir}/{session_id}/chunk-{index:06d}
Partial snapshots go in: {staging_dir}/.snapshots/{uuid}/part-{position:06d}

A payload is first written to a uniquely named staging file in the session
directory and only renamed onto its chunk path once fully written, so a
chunk path never refers to a half-written file.  Every method here performs
blocking I/O; async callers run them through ``asyncio.to_thread``.
"""
import logging
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Iterable, List, Sequence, Tuple, Union

from .errors import ChunkTooLargeError

logger = logging.getLogger(__name__)

# Copy buffer for payloads and concatenation
DEFAULT_BLOCK_SIZE = 1024 * 1024

_STAGED_PREFIX = ".staged-"
_SNAPSHOT_DIR = ".snapshots"

Payload = Union[bytes, bytearray, memoryview, BinaryIO]


class ChunkStore:
    """Filesystem primitive for per-session chunk files.

    Has no notion of session state; callers decide when chunks are written,
    committed, or deleted.
    """

    def __init__(
        self,
        staging_dir: Union[str, Path],
        max_chunk_bytes: int,
        block_size: int = DEFAULT_BLOCK_SIZE,
    ) -> None:
        self._root = Path(staging_dir)
        self._max_chunk_bytes = max_chunk_bytes
        self._block_size = block_size

    @property
    def root(self) -> Path:
        return self._root

    @property
    def max_chunk_bytes(self) -> int:
        return self._max_chunk_bytes

    def ensure_root(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def session_dir(self, session_id: str) -> Path:
        return self._root / session_id

    def chunk_path(self, session_id: str, index: int) -> Path:
        return self.session_dir(session_id) / f"chunk-{index:06d}"

    def create_session_dir(self, session_id: str) -> Path:
        path = self.session_dir(session_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def stage(self, session_id: str, payload: Payload) -> Tuple[Path, int]:
        """Write *payload* to a fresh staging file in the session directory.

        Returns:
            (staged_path, size_bytes)

        Raises:
            ChunkTooLargeError: If the payload exceeds ``max_chunk_bytes``.
            OSError: If the session directory is gone or the write fails.
        """
        staged = self.session_dir(session_id) / f"{_STAGED_PREFIX}{uuid.uuid4().hex}"
        size = 0
        try:
            with staged.open("xb") as out:
                for block in self._iter_blocks(payload):
                    size += len(block)
                    if size > self._max_chunk_bytes:
                        raise ChunkTooLargeError(
                            f"Chunk exceeds limit of {self._max_chunk_bytes} bytes",
                            session_id,
                        )
                    out.write(block)
        except BaseException:
            self.discard(staged)
            raise
        return staged, size

    def _iter_blocks(self, payload: Payload) -> Iterable[bytes]:
        if isinstance(payload, (bytes, bytearray, memoryview)):
            data = memoryview(payload)
            for offset in range(0, len(data), self._block_size):
                yield bytes(data[offset:offset + self._block_size])
            return
        while True:
            block = payload.read(self._block_size)
            if not block:
                return
            yield block

    def commit(self, staged: Path, session_id: str, index: int) -> Path:
        """Atomically move a staged file onto its chunk path, replacing any previous chunk."""
        target = self.chunk_path(session_id, index)
        os.replace(staged, target)
        return target

    def discard(self, staged: Path) -> None:
        """Remove a staged file that will not be committed."""
        try:
            staged.unlink()
        except FileNotFoundError:
            pass

    # ------------------------------------------------------------------
    # Reads / deletes
    # ------------------------------------------------------------------

    def open_chunk(self, path: Union[str, Path]) -> BinaryIO:
        return open(path, "rb")

    def delete_chunk(self, path: Union[str, Path]) -> None:
        Path(path).unlink()

    def remove_session_dir(self, session_id: str) -> None:
        """Delete a session's staging directory and everything in it.

        Raises the first OSError encountered (missing directory is not an error).
        """
        path = self.session_dir(session_id)
        if path.exists():
            shutil.rmtree(path)
            logger.debug("Removed staging directory: %s", path)

    def list_session_dirs(self) -> List[Path]:
        if not self._root.exists():
            return []
        return [p for p in self._root.iterdir() if p.is_dir() and not p.name.startswith(".")]

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @property
    def snapshot_root(self) -> Path:
        return self._root / _SNAPSHOT_DIR

    def link_snapshot(self, paths: Sequence[Path]) -> Tuple[Path, List[Path]]:
        """Hard-link *paths*, in order, into a fresh snapshot directory.

        The links keep the exact chunk files alive after their chunk paths are
        replaced or deleted, without holding a file handle per chunk.

        Returns:
            (snapshot_dir, links)
        """
        snapshot = self.snapshot_root / uuid.uuid4().hex
        snapshot.mkdir(parents=True)
        links: List[Path] = []
        try:
            for position, path in enumerate(paths):
                link = snapshot / f"part-{position:06d}"
                os.link(path, link)
                links.append(link)
        except BaseException:
            shutil.rmtree(snapshot, ignore_errors=True)
            raise
        return snapshot, links

    def remove_snapshot(self, snapshot: Path) -> None:
        """Delete a snapshot directory (missing directory is not an error)."""
        if snapshot.exists():
            shutil.rmtree(snapshot)

    def clear_snapshots(self) -> int:
        """Delete every snapshot directory; used on startup when no stream can be live."""
        root = self.snapshot_root
        if not root.exists():
            return 0
        count = 0
        for path in root.iterdir():
            try:
                shutil.rmtree(path)
                count += 1
            except OSError as exc:
                logger.warning("Could not remove stale snapshot %s: %s", path, exc)
        if count:
            logger.info("Removed %d stale partial-download snapshots", count)
        return count

    def purge_orphans(self, keep: Iterable[str], older_than_seconds: float) -> List[str]:
        """Delete staging directories not in *keep* whose last change is older than the threshold.

        Used on startup to reclaim chunks left behind by a previous process.
        Failures are logged per directory.
        """
        keep_ids = set(keep)
        now = time.time()
        purged: List[str] = []
        for path in self.list_session_dirs():
            if path.name in keep_ids:
                continue
            try:
                if now - path.stat().st_mtime <= older_than_seconds:
                    continue
                shutil.rmtree(path)
                purged.append(path.name)
            except OSError as exc:
                logger.warning("Could not purge orphaned staging dir %s: %s", path, exc)
        if purged:
            logger.info("Purged %d orphaned staging directories", len(purged))
        return purged
