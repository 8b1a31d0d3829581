"""
Runtime support for validators generated by protoc-gen-validator.

Generated ``*_validator.py`` modules import this module and build their
results out of the types defined here. Nothing in it depends on the
generator itself, so an application only needs this file (and the
protobuf runtime) to run generated validators.

Field paths
-----------
Violations name the offending field with a dotted path relative to the
message passed to the top-level validator, e.g. ``items[2].sku`` or
``labels['env']``. Repeated elements use their index, map values use the
``repr()`` of their key.
"""

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple


@dataclass(frozen=True)
class Violation:
    """
    One failed constraint.

    Attributes:
        field: Path of the field that failed, e.g. ``address.zip_code``.
        constraint: Identifier of the failed rule (``range``, ``required``...).
        message: Human-readable reason.
    """
    field: str
    constraint: str
    message: str

    def __str__(self):
        return '%s: %s' % (self.field, self.message)


class ValidationError(ValueError):
    """Raised by ValidationResult.raise_for_violations()."""

    def __init__(self, result: 'ValidationResult'):
        self.result = result
        super().__init__(str(result))


class ValidationResult:
    """
    Outcome of validating one message instance.

    A result is truthy when the message is valid, so generated validators
    can be used directly in conditions::

        if not validate_Order(order):
            ...
    """

    __slots__ = ('violations',)

    def __init__(self, violations: Iterable[Violation] = ()):
        self.violations: Tuple[Violation, ...] = tuple(violations)

    @property
    def valid(self) -> bool:
        return not self.violations

    def __bool__(self):
        return self.valid

    def __iter__(self):
        return iter(self.violations)

    def __len__(self):
        return len(self.violations)

    def __eq__(self, other):
        if not isinstance(other, ValidationResult):
            return NotImplemented
        return self.violations == other.violations

    def __hash__(self):
        return hash(self.violations)

    def __repr__(self):
        return 'ValidationResult(%r)' % (list(self.violations),)

    def __str__(self):
        if self.valid:
            return 'valid'
        return '; '.join(str(v) for v in self.violations)

    def fields(self) -> List[str]:
        """Paths of the violated fields, in report order, without duplicates."""
        seen = []
        for v in self.violations:
            if v.field not in seen:
                seen.append(v.field)
        return seen

    def raise_for_violations(self) -> None:
        if self.violations:
            raise ValidationError(self)


VALID = ValidationResult()


def nested(result: ValidationResult, prefix: str) -> List[Violation]:
    """Re-root the violations of a nested validator under *prefix*."""
    return [Violation(prefix + '.' + v.field, v.constraint, v.message)
            for v in result.violations]


def element_path(path: str, key) -> str:
    """Path of a repeated element (int index) or map value (any key)."""
    if isinstance(key, int) and not isinstance(key, bool):
        return '%s[%d]' % (path, key)
    return '%s[%r]' % (path, key)


def sorted_items(mapping) -> Sequence:
    """Map items in key order, so violations are reported deterministically."""
    return sorted(mapping.items(), key=lambda item: item[0])
