"""Exception hierarchy shared by every engine component."""

from __future__ import annotations

import pydantic


class SecwatchError(Exception):
    """Base class for all engine errors."""


class ValidationError(SecwatchError, ValueError):
    """Malformed event, rule, channel or configuration.

    Carries every violation found so operators can fix input in one pass.
    """

    def __init__(self, errors: list[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors: list[str] = list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")

    @staticmethod
    def describe(exc: pydantic.ValidationError, prefix: str = "") -> list[str]:
        """Flatten a pydantic error into ``"<prefix><loc>: <msg>"`` lines."""
        lines = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err["loc"]) or "value"
            lines.append(f"{prefix}{loc}: {err['msg']}")
        return lines

    @classmethod
    def from_pydantic(
        cls, exc: pydantic.ValidationError, prefix: str = "",
    ) -> ValidationError:
        return cls(cls.describe(exc, prefix))


class InvalidTransitionError(ValidationError):
    """An alert status change that the lifecycle does not allow."""


class NotFoundError(SecwatchError, KeyError):
    """Requested entity does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"


class ConflictError(SecwatchError):
    """Compare-and-swap lost a race; re-read and retry."""

    def __init__(self, entity_id: str, expected: int, actual: int | None) -> None:
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on {entity_id}: expected {expected}, found {actual}"
        )


class RepositoryError(SecwatchError):
    """Storage backend failed; the write was rolled back."""


class NotificationError(SecwatchError):
    """A channel could not deliver a message."""
