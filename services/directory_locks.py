"""Directories with an in-flight conversion, shared with the library scanner."""

import os
import threading
from collections import Counter
from pathlib import Path


def _normalize(path: str | Path) -> str:
    return os.path.normpath(os.path.abspath(os.fspath(path)))


class DirectoryLockSet:
    """
    Reference-counted set of locked directories.

    Two jobs writing into the same directory each hold a reference, so one
    finishing does not unlock the other. Safe to query from other threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()

    def add(self, directory: str | Path) -> None:
        with self._lock:
            self._counts[_normalize(directory)] += 1

    def discard(self, directory: str | Path) -> None:
        key = _normalize(directory)
        with self._lock:
            if self._counts[key] <= 1:
                self._counts.pop(key, None)
            else:
                self._counts[key] -= 1

    def is_directory_busy(self, directory: str | Path) -> bool:
        """True if a conversion is writing into ``directory``."""
        key = _normalize(directory)
        with self._lock:
            return self._counts.get(key, 0) > 0

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()

    def __contains__(self, directory: object) -> bool:
        if not isinstance(directory, (str, Path)):
            return False
        return self.is_directory_busy(directory)

    def __len__(self) -> int:
        with self._lock:
            return len(self._counts)
