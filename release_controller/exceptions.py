"""Exceptions related to the release controller."""

from typing import ClassVar

__all__ = [
    "ReleaseControllerException",
    "InputException",
    "ValidationError",
    "SourceUnavailable",
    "NameConflict",
    "EngineError",
    "PersistenceConflict",
    "ObjectNotFoundError",
    "CommandException",
    "HelmException",
    "GitException",
]


class ReleaseControllerException(Exception):
    """Generic base exception used for this library."""

    retryable: ClassVar[bool] = False
    """True when a later attempt with the same input may succeed."""


class InputException(ReleaseControllerException):
    """Raised when the input documents are not formatted as expected."""


class ValidationError(ReleaseControllerException):
    """Raised when a release request is statically invalid.

    This is derived from the request content alone and is never retried.
    """


class SourceUnavailable(ReleaseControllerException):
    """Raised when chart content could not be fetched from its source."""

    retryable = True


class NameConflict(ReleaseControllerException):
    """Raised when a release name is in use by a release owned by someone else."""

    def __init__(self, release_name: str, owner: str | None) -> None:
        super().__init__(
            f"Release {release_name} already exists and is owned by "
            f"{owner or 'another controller'}"
        )
        self.release_name = release_name
        self.owner = owner


class EngineError(ReleaseControllerException):
    """Raised when the packaging engine fails an operation."""

    def __init__(self, message: str, permanent: bool = False) -> None:
        super().__init__(message)
        self.permanent = permanent

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return not self.permanent


class PersistenceConflict(ReleaseControllerException):
    """Raised when a write is rejected because the stored version changed."""

    retryable = True


class ObjectNotFoundError(ReleaseControllerException):
    """Raised when an object is not found in the store."""

    retryable = True


class CommandException(ReleaseControllerException):
    """Raised when there is a failure running a subcommand."""


class HelmException(CommandException):
    """Raised when there is a failure running a helm command."""


class GitException(CommandException):
    """Raised when there is a failure running a git command."""
