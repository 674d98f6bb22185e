"""Scoped ownership of the intermediate numeric objects of one alignment call.

Every grayscale buffer, feature set, match list, point matrix and
intermediate transform created while aligning a pair is adopted by an
`Arena`. Closing the arena releases all of them, whichever way the call
exits. Objects handed back to the caller are detached first.

A process-wide counter tracks adopted-but-unreleased objects so a batch can
be checked for leaks with `outstanding()`.
"""

import logging
import threading
from typing import Any, List, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

_lock = threading.Lock()
_outstanding = 0


def _acquire(n=1):
    global _outstanding
    with _lock:
        _outstanding += n


def _release(n=1):
    global _outstanding
    with _lock:
        _outstanding -= n


def outstanding() -> int:
    """Number of adopted objects not yet released, across all arenas."""
    with _lock:
        return _outstanding


class Arena:
    """Owns intermediate objects until the enclosing scope exits.

    Usage::

        with Arena("align") as arena:
            gray = arena.adopt(to_gray(img))
            ...
            return arena.detach(result)
    """

    def __init__(self, label: str = "arena"):
        self.label = label
        self._objects: List[Any] = []
        self._closed = False

    def adopt(self, obj: T) -> T:
        if self._closed:
            raise RuntimeError(f"Arena {self.label!r} is already closed")
        self._objects.append(obj)
        _acquire()
        return obj

    def detach(self, obj: T) -> T:
        """Transfer ownership of `obj` to the caller."""
        for idx, owned in enumerate(self._objects):
            if owned is obj:
                del self._objects[idx]
                _release()
                break
        return obj

    def close(self):
        if self._closed:
            return
        self._closed = True
        count = len(self._objects)
        while self._objects:
            obj = self._objects.pop()
            release = getattr(obj, "release", None)
            if callable(release):
                release()
        _release(count)
        log.debug(f"Arena {self.label!r} released {count} object(s)")

    def __len__(self):
        return len(self._objects)

    def __enter__(self) -> "Arena":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
