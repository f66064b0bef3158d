"""
Durable slot counter shared by every process that provisions accounts.

The counter file holds the last slot id handed out. Each allocation is a
read-modify-write performed entirely under an exclusive flock, so the API
process and a short-lived provisioning helper never observe the same base
value. Slots are never returned to a pool: a crash mid-provisioning wastes a
slot, it never hands one account another account's slot.
"""
from __future__ import annotations

import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from gateway.errors import ResourceError

log = logging.getLogger(__name__)

_LOCK_POLL_INTERVAL = 0.01


class SlotAllocator:
    """Monotonic, cross-process slot id allocator backed by a locked file."""

    def __init__(self, counter_file: Path, lock_timeout: float = 10.0):
        self.counter_file = Path(counter_file)
        self.lock_timeout = lock_timeout

    @contextmanager
    def _locked(self, exclusive: bool = True) -> Iterator[int]:
        """Open the counter file and hold a flock on it for the block.

        The lock is taken with LOCK_NB in a polling loop so a wedged peer
        turns into a ResourceError instead of blocking forever.
        """
        try:
            self.counter_file.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.counter_file, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise ResourceError(f"Couldn't open slot counter {self.counter_file}: {e}") from e

        try:
            mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
            deadline = time.monotonic() + self.lock_timeout
            while True:
                try:
                    fcntl.flock(fd, mode | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise ResourceError(
                            f"Couldn't lock slot counter {self.counter_file} "
                            f"within {self.lock_timeout:g}s"
                        )
                    time.sleep(_LOCK_POLL_INTERVAL)
                except OSError as e:
                    raise ResourceError(f"Couldn't lock slot counter {self.counter_file}: {e}") from e
            try:
                yield fd
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def _read(fd: int) -> int:
        os.lseek(fd, 0, os.SEEK_SET)
        raw = b""
        while chunk := os.read(fd, 64):
            raw += chunk
        try:
            return int(raw.decode().strip())
        except (UnicodeDecodeError, ValueError):
            # Empty or garbled counter counts as zero
            return 0

    @staticmethod
    def _write(fd: int, value: int) -> None:
        os.lseek(fd, 0, os.SEEK_SET)
        os.ftruncate(fd, 0)
        os.write(fd, str(value).encode())
        os.fsync(fd)

    def initialize(self, current: int) -> None:
        """Set the last issued slot. Called once at bootstrap."""
        if current < 0:
            raise ValueError(f"slot counter cannot be negative (got {current})")
        with self._locked() as fd:
            try:
                self._write(fd, current)
            except OSError as e:
                raise ResourceError(f"Couldn't write slot counter {self.counter_file}: {e}") from e
        log.info(f"Slot counter initialized to {current}")

    def current(self) -> int:
        """Last slot issued (0 when nothing was ever allocated)."""
        with self._locked(exclusive=False) as fd:
            return self._read(fd)

    def allocate_next(self) -> int:
        """Issue the next slot id. Raises ResourceError rather than risk a duplicate."""
        with self._locked() as fd:
            current = self._read(fd)
            nxt = current + 1
            try:
                self._write(fd, nxt)
            except OSError as e:
                raise ResourceError(
                    f"Couldn't write slot counter {self.counter_file}: {e}", slot=nxt
                ) from e
        log.info(f"Allocated slot {nxt}")
        return nxt
