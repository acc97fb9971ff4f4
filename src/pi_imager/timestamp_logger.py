import pathlib
import csv
import time
import typing
from contextlib import contextmanager


class Timestamp_Logger:
    """
    A class to log the successful completion of build steps as timestamps in a csv file
    """

    def __init__(self, log_file: pathlib.Path):
        # Log file to store timestamps
        self._log_file = log_file

    @property
    def log_file(self) -> pathlib.Path:
        return self._log_file

    def _read_logs(self) -> typing.List[typing.List[str]]:
        try:
            with open(self._log_file, mode="r", newline="") as file:
                return [row for row in csv.reader(file) if row]
        except FileNotFoundError:
            return []  # It is okay if the file does not exist

    def _write_logs(self, logs: typing.List[typing.List[str]]):
        self._log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self._log_file, mode="w", newline="") as file:
            writer = csv.writer(file)
            writer.writerows(logs)

    def log_timestamp(self, identifier: str):
        """
        Creates or updates a timestamp in the timestamp csv file.

        Args:
            identifier:
                Identifier of the timestamp.

        Returns:
            None

        Raises:
            None
        """

        logs = [row for row in self._read_logs() if row[0] != identifier]
        logs.append([identifier, str(time.time())])
        self._write_logs(logs)

    def get_logged_timestamp(self, identifier: str) -> float:
        """
        Reads a timestamp from the timestamp csv file.

        Args:
            identifier:
                Identifier of the timestamp.

        Returns:
            The timestamp if it was found. Otherwise 0.

        Raises:
            None
        """

        for row in self._read_logs():
            if row[0] == identifier:
                return float(row[1])

        return 0.0

    def is_logged(self, identifier: str) -> bool:
        return self.get_logged_timestamp(identifier=identifier) != 0.0

    def del_logged_timestamp(self, identifier: str):
        """
        Delete a timestamp in the timestamp csv file.

        Args:
            identifier:
                Identifier of the timestamp.

        Returns:
            None

        Raises:
            None
        """

        if not self._log_file.exists():
            return

        self._write_logs([row for row in self._read_logs() if row[0] != identifier])

    def clear(self):
        self._log_file.unlink(missing_ok=True)

    @contextmanager
    def timestamp(self, identifier: str):
        """
        A context manager to manage timestamp logging. If a timestamp is used to log the success of a step, it is
        removed before the step is executed again, as the step could fail on the new attempt and the "success"
        timestamp would then be misleading.

        Args:
            identifier:
                Identifier of the timestamp.

        Returns:
            None

        Raises:
            None
        """

        # Reset step success log
        self.del_logged_timestamp(identifier=identifier)
        yield
        # If this point is reached, the nested block was successful -> Log success
        self.log_timestamp(identifier=identifier)
