"""Ok/Err results for configuration loading and start-up guards.

Both run before the service accepts any request; they report problems as
values so the CLI can print every one of them and exit with a stable code.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, NoReturn, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


class ResultError(Exception):
    """Raised when the wrong side of a Result is unwrapped."""


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self) -> NoReturn:
        raise ResultError(f"Expected an error, got Ok({self.value!r})")


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        raise ResultError(f"Expected a value, got Err({self.error!r})")

    def unwrap_err(self) -> E:
        return self.error


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True)
class ConfigError:
    """A configuration value that cannot be used; field is a dotted path."""

    field: str
    message: str

    def __str__(self) -> str:
        return f"Config error in '{self.field}': {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {"status": "error", "field": self.field, "message": str(self)}


@dataclass(frozen=True)
class GuardError:
    """A failed start-up check and the exit code it maps to."""

    code: int
    message: str
    details: str = ""

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {"status": "error", "message": self.message, "details": self.details}


class ExitCode:
    """Process exit codes of the ``blt`` command."""

    SUCCESS = 0
    GENERAL_ERROR = 1

    # Local problems, detected before contacting anything
    CONFIG_INVALID = 10
    STATE_FILE_UNWRITABLE = 11

    # The archive or a running service
    SERVICE_UNREACHABLE = 20
    REQUEST_REJECTED = 21
    ARCHIVE_UNCONFIGURED = 22
