"""File based locks used by rule guard processes.

Two locks are involved and they protect different things:

  ResourceLock   flock(2) over a host-wide path (/var/lock/iptables.lock by
                 default). Every policy process takes it around its reads and
                 writes of the iptables filter table, so unrelated policies
                 serialise against each other and not only against copies of
                 themselves. Acquisition is bounded; a hung holder makes the
                 waiter give up instead of wedging it.

  InstanceLock   a heartbeat record (one per policy) that keeps a second copy
                 of the same policy from starting. The owner's LockRenewer
                 thread touches it every few seconds. A record whose mtime is
                 older than the stale threshold belongs to a dead process and
                 is deleted by whoever notices it, so a supervisor restart
                 never needs an operator to clean up. The stale check, the
                 delete and the create run under flock(2) on `<path>.guard`,
                 and the owner is whoever created the record's current inode.
                 An owner that finds its inode replaced reports the loss.

Both locks release themselves from __exit__, which runs on normal return, on
exceptions and on the SystemExit raised by the SIGTERM/SIGINT handler.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import threading
import time
from typing import Callable, Iterator, Optional, Tuple

from guard_errors import ConfigError, LockError, LockHeldError, LockTimeout

DEFAULT_STALE_THRESHOLD = 5.0
DEFAULT_RENEW_INTERVAL = 3.0
DEFAULT_LOCK_TIMEOUT = 5.0


def record_age(path: str) -> Optional[float]:
    """Seconds since the record at `path` was last renewed, None if absent."""
    try:
        return time.time() - os.stat(path).st_mtime
    except FileNotFoundError:
        return None


def _stat_identity(st: os.stat_result) -> Tuple[int, int]:
    return (st.st_dev, st.st_ino)


def _path_identity(path: str) -> Optional[Tuple[int, int]]:
    try:
        return _stat_identity(os.stat(path))
    except FileNotFoundError:
        return None


def _same_file(fd: int, path: str) -> bool:
    return _path_identity(path) == _stat_identity(os.fstat(fd))


def _read_pid(path: str) -> Optional[int]:
    try:
        with open(path, "r") as f:
            return int(f.readline().strip())
    except (OSError, ValueError):
        return None


class ResourceLock:
    POLL_INTERVAL = 0.1

    def __init__(self, path: str, stale_threshold: float = DEFAULT_STALE_THRESHOLD,
                 timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.path = path
        self.stale_threshold = stale_threshold
        self.timeout = timeout
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def clear_stale(self) -> bool:
        """Delete the record if it is older than the threshold and unheld.

        An old mtime alone does not prove the holder is gone (a slow
        iptables call can legitimately keep the lock), so the record is only
        removed when a non-blocking flock on it succeeds.
        """
        age = record_age(self.path)
        if age is None or age <= self.stale_threshold:
            return False
        try:
            fd = os.open(self.path, os.O_RDWR)
        except FileNotFoundError:
            return False
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                logging.debug(f"Resource lock {self.path} is old ({age:.0f}s) but still held")
                return False
            if not _same_file(fd, self.path):
                return False
            os.unlink(self.path)
            logging.warning(f"Stale resource lock detected (age: {age:.0f} seconds). Removed {self.path}")
            return True
        finally:
            os.close(fd)

    def acquire(self, timeout: Optional[float] = None) -> "ResourceLock":
        if self._fd is not None:
            raise LockError(f"{self.path} is already held by this process")
        timeout = self.timeout if timeout is None else timeout
        self.clear_stale()
        logging.debug(f"Waiting for resource lock {self.path}...")
        deadline = time.monotonic() + timeout
        while True:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                if time.monotonic() >= deadline:
                    logging.warning(f"Timed out waiting for resource lock {self.path}")
                    raise LockTimeout(f"timed out after {timeout}s waiting for {self.path}")
                time.sleep(self.POLL_INTERVAL)
                continue
            # The previous holder unlinks the path on release; a lock taken on
            # the orphaned inode excludes nobody.
            if not _same_file(fd, self.path):
                os.close(fd)
                continue
            break
        os.utime(fd)
        self._fd = fd
        logging.info(f"Acquired resource lock {self.path}")
        return self

    def release(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass
        finally:
            os.close(fd)
        logging.info(f"Released resource lock {self.path}")

    def __enter__(self) -> "ResourceLock":
        if self._fd is None:
            self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class LockRenewer(threading.Thread):
    """Touches an instance lock record on a fixed cadence until told to stop or the record is lost."""

    def __init__(self, lock: "InstanceLock", interval: float = DEFAULT_RENEW_INTERVAL):
        super().__init__(name=f"lock-renewer:{os.path.basename(lock.path)}", daemon=True)
        self.lock = lock
        self.interval = interval
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self.interval):
            if not self.lock.renew():
                return

    def stop(self) -> None:
        self._stopped.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=self.interval + 1)


class InstanceLock:
    """Single-instance guard for one policy.

    Checking a record for staleness, deleting it and creating a new one is
    serialised through flock(2) on a sidecar `<path>.guard` file, so two
    processes racing over the same stale record cannot both end up owning
    it. Ownership is the record's inode: whoever replaced it owns it now.
    `on_lost` is called from the renewer thread when that happens to us.
    """

    GUARD_POLL_INTERVAL = 0.05

    def __init__(self, path: str, stale_threshold: float = DEFAULT_STALE_THRESHOLD,
                 renew_interval: float = DEFAULT_RENEW_INTERVAL, guard_timeout: float = 1.0,
                 on_lost: Optional[Callable[[], None]] = None):
        if renew_interval >= stale_threshold:
            raise ConfigError(
                f"renew interval ({renew_interval}s) must be shorter than the stale threshold ({stale_threshold}s)")
        self.path = path
        self.guard_path = f"{path}.guard"
        self.stale_threshold = stale_threshold
        self.renew_interval = renew_interval
        self.guard_timeout = guard_timeout
        self.on_lost = on_lost
        self.lost = False
        self._identity: Optional[Tuple[int, int]] = None
        self._renewer: Optional[LockRenewer] = None

    @property
    def held(self) -> bool:
        return self._identity is not None

    @contextlib.contextmanager
    def _guarded(self) -> Iterator[None]:
        fd = os.open(self.guard_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            deadline = time.monotonic() + self.guard_timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockHeldError(f"{self.guard_path} is held by another starting instance")
                    time.sleep(self.GUARD_POLL_INTERVAL)
            yield
        finally:
            os.close(fd)

    def _remove_if_stale(self) -> None:
        age = record_age(self.path)
        if age is None or age <= self.stale_threshold:
            return
        logging.warning(f"Stale instance lock detected (age: {age:.0f} seconds). Removing {self.path}")
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass

    def _create_record(self) -> None:
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        self._identity = _stat_identity(os.fstat(fd))
        with os.fdopen(fd, "w") as f:
            f.write(f"{os.getpid()}\n")

    def owns_record(self) -> bool:
        return self._identity is not None and _path_identity(self.path) == self._identity

    def acquire(self) -> "InstanceLock":
        """Take the lock or raise LockHeldError; never waits for the holder."""
        if self._identity is not None:
            raise LockError(f"{self.path} is already held by this process")
        with self._guarded():
            self._remove_if_stale()
            try:
                try:
                    self._create_record()
                except FileExistsError:
                    logging.error(f"Another instance is already running (pid {_read_pid(self.path)}). Exiting.")
                    raise LockHeldError(f"{self.path} is held by a live instance")
                self.lost = False
                self._renewer = LockRenewer(self, self.renew_interval)
                self._renewer.start()
            except BaseException:
                # Also covers a SIGTERM landing between create and renewer start.
                self._abandon()
                raise
        logging.info(f"Acquired instance lock {self.path}")
        return self

    def renew(self) -> bool:
        """Refresh the record; False once it belongs to somebody else."""
        identity = _path_identity(self.path)
        if identity is None:
            logging.warning(f"Instance lock {self.path} disappeared, recreating it")
            try:
                with self._guarded():
                    self._create_record()
                return True
            except LockHeldError:
                return True
            except FileExistsError:
                pass
        elif identity == self._identity:
            try:
                os.utime(self.path)
            except OSError as e:
                logging.error(f"Failed to renew instance lock {self.path}: {e}")
            return True
        logging.error(f"Instance lock {self.path} was taken over by pid {_read_pid(self.path)}")
        self.lost = True
        if self.on_lost is not None:
            self.on_lost()
        return False

    def _abandon(self) -> None:
        renewer, self._renewer = self._renewer, None
        if renewer is not None:
            renewer.stop()
        if self.owns_record():
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass
        self._identity = None

    def release(self) -> None:
        if self._identity is None:
            return
        self._abandon()
        logging.info(f"Released instance lock {self.path}")

    def __enter__(self) -> "InstanceLock":
        if self._identity is None:
            self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
