"""Error hierarchy for pyTestDB.

Error layers:
- PyTestDBError: Base class for all pyTestDB errors
- HashingError: A hash-path could not be read, the run cannot continue
- BuildFailed: Building a connection's database failed
- SnapshotIOError: Importing or exporting a snapshot failed
- RemoteBuildTimeout / RemoteShareException: Remote build delegation failed
- ConfigurationError: Invalid or inconsistent settings

The remote build server maps these errors to JSON error bodies.
"""

from typing import Optional


class PyTestDBError(Exception):
    """Base class for all pyTestDB errors."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        super().__init__(message)


class HashingError(PyTestDBError):
    """A hash-path or pre-migration import could not be read."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="HASHING_ERROR")
        self.path = path


class BuildFailed(PyTestDBError):
    """Migrating, seeding or importing a database failed."""

    def __init__(
        self,
        message: str,
        connection: Optional[str] = None,
        driver: Optional[str] = None,
        hashes: Optional[object] = None,
    ) -> None:
        context = []
        if connection:
            context.append(f'connection "{connection}"')
        if driver:
            context.append(f'driver "{driver}"')
        if hashes is not None:
            context.append(f"hashes {hashes}")
        full_message = f"{message} ({', '.join(context)})" if context else message
        super().__init__(full_message, code="BUILD_FAILED")
        self.connection = connection
        self.driver = driver
        self.hashes = hashes


class SnapshotIOError(PyTestDBError):
    """A snapshot dump/restore failed."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="SNAPSHOT_IO_ERROR")
        self.path = path


class RemoteBuildTimeout(PyTestDBError):
    """The remote build server did not answer in time."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="REMOTE_BUILD_TIMEOUT")


class RemoteShareException(PyTestDBError):
    """The remote build server returned an error, an unreadable payload or a
    payload from a different version."""

    @classmethod
    def version_mismatch(cls, local: str, remote: Optional[str]) -> "RemoteShareException":
        return cls(
            f"Remote pyTestDB version mismatch: local {local!r}, remote {remote!r}",
            code="VERSION_MISMATCH",
        )

    @classmethod
    def could_not_read_resolved_settings(cls) -> "RemoteShareException":
        return cls(
            "Could not read the ResolvedSettingsDTO payload from the remote response",
            code="UNREADABLE_PAYLOAD",
        )

    @classmethod
    def remote_error(cls, status_code: int, message: str) -> "RemoteShareException":
        return cls(
            f"Remote build failed with status {status_code}: {message}",
            code="REMOTE_ERROR",
        )


class ConfigurationError(PyTestDBError):
    """Settings are missing or inconsistent."""
