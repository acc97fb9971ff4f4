import fcntl
import pathlib

from pi_imager.exceptions import Session_Locked_Error


class Session_Lock:
    """
    Advisory lock that prevents two sessions from working on the same working directory at the same time
    """

    lock_file_name = ".pi-imager.lock"

    def __init__(self, work_dir: pathlib.Path):
        self._lock_file = work_dir / self.lock_file_name
        self._handle = None

    @property
    def lock_file(self) -> pathlib.Path:
        return self._lock_file

    def acquire(self):
        """
        Acquires the lock without waiting.

        Args:
            None

        Returns:
            None

        Raises:
            Session_Locked_Error:
                If another process holds the lock.
        """

        self._lock_file.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self._lock_file, "w", encoding="utf-8")
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            raise Session_Locked_Error(self._lock_file) from None
        self._handle = handle

    def release(self):
        if self._handle is None:
            return
        fcntl.flock(self._handle, fcntl.LOCK_UN)
        self._handle.close()
        self._handle = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
