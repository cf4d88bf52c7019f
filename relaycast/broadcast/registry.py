"""
Registry of broadcast files written by the origin node.

Each file is stamped with the time it was written. Reads never refresh
the stamp, so a file's lifetime is measured from its publication.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)


class TimeStampedFileRegistry:
    """
    Set of files, each with a last-touched timestamp (seconds since epoch).

    Thread-safe via Lock.
    """

    def __init__(self):
        self._files: Dict[Path, float] = {}
        self._lock = threading.Lock()

    def add(self, path: Path, timestamp: Optional[float] = None) -> None:
        with self._lock:
            self._files[Path(path)] = time.time() if timestamp is None else timestamp

    def remove(self, path: Path) -> bool:
        with self._lock:
            return self._files.pop(Path(path), None) is not None

    def contains(self, path: Path) -> bool:
        with self._lock:
            return Path(path) in self._files

    def timestamp_of(self, path: Path) -> Optional[float]:
        with self._lock:
            return self._files.get(Path(path))

    def items(self) -> List[Tuple[Path, float]]:
        """Snapshot of (path, timestamp) pairs."""
        with self._lock:
            return list(self._files.items())

    def clear_older_than(self, cutoff: float) -> List[Path]:
        """Remove and return every entry whose timestamp is strictly before ``cutoff``."""
        with self._lock:
            expired = [path for path, stamp in self._files.items() if stamp < cutoff]
            for path in expired:
                del self._files[path]
        return expired

    def clear(self) -> None:
        with self._lock:
            self._files.clear()

    def __contains__(self, path) -> bool:
        return self.contains(path)

    def __len__(self) -> int:
        with self._lock:
            return len(self._files)

    def __iter__(self) -> Iterator[Path]:
        return iter([path for path, _ in self.items()])


def delete_broadcast_file(path: Path) -> bool:
    """
    Best-effort delete of a broadcast file.

    A file that is already gone counts as deleted. Any other failure is
    logged and reported as False; it never raises.
    """
    path = Path(path)
    try:
        path.unlink()
    except FileNotFoundError:
        logger.debug(f"Broadcast file already gone: {path}")
        return True
    except OSError as e:
        logger.error(f"Could not delete broadcast file {path}: {e}", exc_info=True)
        return False

    logger.info(f"Deleted broadcast file: {path}")
    return True
