import fcntl
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from ..errors import ProvisioningLockedError
from ..logging import get_logger

logger = get_logger(__name__)

PRIVATE_MODE = 0o600
PUBLIC_MODE = 0o644
SCRIPT_MODE = 0o755


def atomic_write(target_path: Union[str, Path], data: Union[str, bytes], mode: int = PUBLIC_MODE) -> Path:
    """
    Writes data to a file atomically via a temporary file.
    Prevents half-written artifacts if the process is interrupted.
    The permission bits are applied before the rename, so a private key
    is never visible with broader permissions.
    """
    target = Path(target_path)
    target.parent.mkdir(parents=True, exist_ok=True)

    # Use the same directory as the target to ensure same-device os.replace
    with tempfile.NamedTemporaryFile(
        dir=target.parent,
        delete=False,
        mode='w' if isinstance(data, str) else 'wb',
        prefix=f".{target.name}.",
        suffix=".tmp"
    ) as tf:
        tf.write(data)
        temp_name = tf.name

    try:
        os.chmod(temp_name, mode)
        os.replace(temp_name, target)
    except Exception as e:
        logger.error(f"Failed to perform atomic write to {target}: {e}")
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise
    return target


def write_private(target_path: Union[str, Path], data: Union[str, bytes]) -> Path:
    """Atomically write key material readable by the owner only."""
    return atomic_write(target_path, data, mode=PRIVATE_MODE)


class ExclusiveLock:
    """
    Cross-process lock held as an flock() on a lock file.

    The kernel drops the lock when its owner exits, so a file left behind
    by a dead session (with a PID or empty) never blocks the next one. The
    file records the owner's PID for the error message only. A live owner
    raises ProvisioningLockedError.

    Usage:
        with ExclusiveLock(root / ".provision.lock"):
            ...
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            fd = os.open(str(self.path), os.O_CREAT | os.O_RDWR, PRIVATE_MODE)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                raise ProvisioningLockedError(str(self.path), self._read_owner())
            # The previous owner unlinks the file on release; lock the new one instead
            if self._is_current(fd):
                break
            os.close(fd)

        previous = self._read_owner()
        if previous is not None:
            logger.warning(f"Reclaiming stale lock {self.path} left by pid {previous}")
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug(f"Acquired lock {self.path}")

    def release(self) -> None:
        if self._fd is not None:
            # Unlink while still locked so a waiter on the old file retries
            self.path.unlink(missing_ok=True)
            os.close(self._fd)
            self._fd = None
            logger.debug(f"Released lock {self.path}")

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _is_current(self, fd: int) -> bool:
        try:
            on_disk = os.stat(self.path)
        except FileNotFoundError:
            return False
        opened = os.fstat(fd)
        return (opened.st_dev, opened.st_ino) == (on_disk.st_dev, on_disk.st_ino)

    def _read_owner(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def __enter__(self) -> "ExclusiveLock":
        self.acquire()
        return self

    def __exit__(self, *args) -> None:
        self.release()
