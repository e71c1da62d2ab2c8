"""Error taxonomy and structured findings for model operations."""

from __future__ import annotations

from pydantic import BaseModel


class TmdlError(Exception):
    """Base class for every failure raised by tmdlkit operations."""


class NotFoundError(TmdlError):
    """A path or model object does not exist."""


class ObjectNotFoundError(NotFoundError, KeyError):
    """A named object is missing from a collection.

    Subclasses ``KeyError`` so lookups behave like a mapping.
    """

    def __init__(self, kind: str, name: str, scope: str | None = None) -> None:
        self.kind = kind
        self.name = name
        self.scope = scope
        where = f" in {scope}" if scope else ""
        super().__init__(f"{kind.title()} '{name}' not found{where}")

    def __str__(self) -> str:
        return str(self.args[0])


class ConflictError(TmdlError):
    """An edit would leave the model inconsistent."""


class DuplicateNameError(ConflictError):
    """A name collides (case-insensitively) with an existing sibling."""

    def __init__(self, kind: str, name: str, scope: str | None = None) -> None:
        self.kind = kind
        self.name = name
        self.scope = scope
        where = f" in {scope}" if scope else ""
        super().__init__(f"{kind.title()} '{name}' already exists{where}")


class MalformedError(TmdlError):
    """Text did not match the expected structure."""


class ExternalToolError(TmdlError):
    """An external collaborator failed, exited non-zero or timed out."""


class OperationCancelledError(TmdlError):
    """Cooperative cancellation was observed between steps."""


class InvalidArgumentError(TmdlError, ValueError):
    """A caller-supplied argument is not acceptable."""


class SemanticError(BaseModel):
    """A structured error or warning with an optional location and suggestions."""

    code: str
    message: str
    path: str | None = None
    suggestions: list[str] = []


class ValidationResult(BaseModel):
    """Result of model validation."""

    valid: bool
    errors: list[SemanticError] = []
    warnings: list[SemanticError] = []
