"""Errors and diagnostics reported by the validator generator."""

from dataclasses import dataclass
from typing import Iterable, List, Optional


class GenerationError(Exception):
    """Base class for problems with the input schemas."""


class ResolutionError(GenerationError):
    """A type reference could not be resolved against the descriptor set."""

    def __init__(self, file: str, message: str, field: str, type_name: str):
        self.file = file
        self.message = message
        self.field = field
        self.type_name = type_name
        super().__init__('%s: %s.%s: unknown type "%s"' % (file, message, field, type_name))


@dataclass(frozen=True)
class GenerationDiagnostic:
    """
    A malformed or type-incompatible constraint.

    Attributes:
        file: Name of the .proto file declaring the message.
        message: Package-relative message name (e.g. ``Outer.Inner``).
        field: Field (or oneof) name the constraint is attached to.
        reason: What is wrong with the constraint.
    """
    file: str
    message: str
    field: Optional[str]
    reason: str

    def __str__(self):
        if self.field:
            return '%s: %s.%s: %s' % (self.file, self.message, self.field, self.reason)
        return '%s: %s: %s' % (self.file, self.message, self.reason)


class DiagnosticsError(GenerationError):
    """Raised once extraction is complete if any diagnostic was collected."""

    def __init__(self, diagnostics: Iterable[GenerationDiagnostic]):
        self.diagnostics: List[GenerationDiagnostic] = list(diagnostics)
        super().__init__(format_diagnostics(self.diagnostics))


def format_diagnostics(diagnostics: Iterable[GenerationDiagnostic]) -> str:
    return '\n'.join(str(d) for d in diagnostics)
