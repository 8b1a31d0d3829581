#!/usr/bin/env python3
# kate: replace-tabs on; indent-width 4;

"""
Constraint Extractor
====================

Reads the ``(protovalidator.field)`` and ``(protovalidator.oneof)`` options
attached to the fields of the requested files, decodes them once into typed
``Constraint`` records and checks that each one makes sense for the field it
is attached to.

Applicability
-------------
- range:        numeric scalar fields (per element / per map value)
- length:       singular string or bytes fields, any repeated or map field
- pattern:      string fields (per element / per map value)
- required:     any field
- nested:       message fields (per element / per map value)
- count:        repeated and map fields
- defined_enum: enum fields (per element / per map value)
- oneof required: any real oneof

Problems are collected as GenerationDiagnostic entries. Extraction always
walks every field of every requested file, so one run reports every bad
constraint rather than just the first one.
"""

import math
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .descriptor_walker import (DescriptorGraph, FieldDecl, FieldKind,
                                MessageType, Oneof, SchemaFile)
from .diagnostics import GenerationDiagnostic

WELL_KNOWN_PREFIX = 'google/protobuf/'


class ConstraintKind(Enum):
    REQUIRED = 'required'
    COUNT = 'count'
    LENGTH = 'length'
    RANGE = 'range'
    DEFINED_ENUM = 'defined_enum'
    PATTERN = 'pattern'
    NESTED = 'nested'
    ONEOF_REQUIRED = 'oneof_required'


@dataclass(frozen=True)
class Constraint:
    """
    A decoded constraint, scoped to exactly one field (or oneof).

    Attributes:
        kind: Which predicate this is.
        params: Predicate configuration, e.g. ``{'min': 1.0, 'max': 10.0,
                'exclusive': False}`` for a range.
        message: Full name of the declaring message.
        target: Name of the field (or oneof) the constraint is attached to.
        human_error: Author supplied failure message, if any.
    """
    kind: ConstraintKind
    params: Dict[str, Any] = field(default_factory=dict, compare=False)
    message: str = ''
    target: str = ''
    human_error: Optional[str] = None


@dataclass
class ExtractionResult:
    """
    Constraints of the requested files.

    ``fields`` and ``oneofs`` are keyed by (message full name, field or oneof
    name) and kept in emission order. Fields without constraints have no
    entry.
    """
    fields: Dict[Tuple[str, str], List[Constraint]] = field(default_factory=OrderedDict)
    oneofs: Dict[Tuple[str, str], List[Constraint]] = field(default_factory=OrderedDict)
    diagnostics: List[GenerationDiagnostic] = field(default_factory=list)

    def for_field(self, message: MessageType, decl: FieldDecl) -> List[Constraint]:
        return self.fields.get((message.full_name, decl.name), [])

    def for_oneof(self, message: MessageType, oneof: Oneof) -> List[Constraint]:
        return self.oneofs.get((message.full_name, oneof.name), [])


def _optional(rules: Any, name: str) -> Any:
    if rules.HasField(name):
        return getattr(rules, name)
    return None


class ConstraintExtractor:
    """Decodes and checks the constraints of every requested message."""

    def __init__(self, graph: DescriptorGraph):
        self.graph = graph
        self.result = ExtractionResult()

    def extract(self) -> ExtractionResult:
        for schema_file, message in self.graph.iter_messages():
            if message.is_map_entry:
                continue
            for decl in message.fields:
                self._extract_field(schema_file, message, decl)
            for oneof in message.oneofs:
                self._extract_oneof(schema_file, message, oneof)
        return self.result

    def _report(self, schema_file: SchemaFile, message: MessageType,
                target: Optional[str], reason: str) -> None:
        self.result.diagnostics.append(
            GenerationDiagnostic(schema_file.name, message.name, target, reason))

    # -------------------------------------------------------------------------
    # Fields
    # -------------------------------------------------------------------------

    def _extract_field(self, schema_file: SchemaFile, message: MessageType, decl: FieldDecl) -> None:
        raw = decl.constraints
        if raw is None:
            return

        constraints = []
        for constraint in self.decode(raw, message, decl):
            reason = self._check(constraint, decl)
            if reason:
                self._report(schema_file, message, decl.name, reason)
            else:
                constraints.append(constraint)

        if constraints:
            self.result.fields[(message.full_name, decl.name)] = constraints

    @staticmethod
    def decode(raw: Any, message: MessageType, decl: FieldDecl) -> List[Constraint]:
        """
        Decode a FieldConstraints option into Constraint records.

        Flags set to false produce nothing. Order follows the option
        message declaration order; the rule compiler imposes evaluation
        order later.
        """
        human_error = _optional(raw, 'human_error') or None

        def make(kind, **params):
            return Constraint(kind, params, message.full_name, decl.name, human_error)

        result = []
        if raw.HasField('range'):
            result.append(make(ConstraintKind.RANGE,
                               min=_optional(raw.range, 'min'),
                               max=_optional(raw.range, 'max'),
                               exclusive=raw.range.exclusive))
        if raw.HasField('length'):
            result.append(make(ConstraintKind.LENGTH,
                               min=_optional(raw.length, 'min'),
                               max=_optional(raw.length, 'max')))
        if raw.HasField('pattern'):
            result.append(make(ConstraintKind.PATTERN,
                               regex=raw.pattern.regex,
                               substring=raw.pattern.substring))
        if raw.required:
            result.append(make(ConstraintKind.REQUIRED))
        if raw.nested:
            result.append(make(ConstraintKind.NESTED))
        if raw.HasField('count'):
            result.append(make(ConstraintKind.COUNT,
                               min=_optional(raw.count, 'min'),
                               max=_optional(raw.count, 'max')))
        if raw.defined_enum:
            result.append(make(ConstraintKind.DEFINED_ENUM))
        return result

    def _check(self, constraint: Constraint, decl: FieldDecl) -> Optional[str]:
        """Return the reason a constraint is unusable on decl, or None."""
        kind = constraint.kind
        element = decl.element
        p = constraint.params

        if kind == ConstraintKind.RANGE:
            if not element.kind.is_numeric:
                return 'range constraint requires a numeric field, got %s' % decl.describe_type()
            return self._check_bounds('range', p['min'], p['max'], p['exclusive'])

        if kind == ConstraintKind.LENGTH:
            if decl.is_repeated or decl.is_map:
                pass
            elif decl.kind not in (FieldKind.STRING, FieldKind.BYTES):
                return ('length constraint requires a string, bytes, repeated or map field, got %s'
                        % decl.describe_type())
            return self._check_bounds('length', p['min'], p['max'], False)

        if kind == ConstraintKind.PATTERN:
            if element.kind != FieldKind.STRING:
                return 'pattern constraint requires a string field, got %s' % decl.describe_type()
            if not p['regex']:
                return 'pattern constraint has an empty regex'
            try:
                re.compile(p['regex'])
            except re.error as e:
                return 'pattern "%s" does not compile: %s' % (p['regex'], e)
            return None

        if kind == ConstraintKind.NESTED:
            if element.kind != FieldKind.MESSAGE:
                return 'nested constraint requires a message field, got %s' % decl.describe_type()
            if element.message_type.file.startswith(WELL_KNOWN_PREFIX):
                return ('nested constraint targets %s, which has no generated validator'
                        % element.message_type.full_name)
            return None

        if kind == ConstraintKind.COUNT:
            if not (decl.is_repeated or decl.is_map):
                return 'count constraint requires a repeated or map field, got %s' % decl.describe_type()
            return self._check_bounds('count', p['min'], p['max'], False)

        if kind == ConstraintKind.DEFINED_ENUM:
            if element.kind != FieldKind.ENUM:
                return 'defined_enum constraint requires an enum field, got %s' % decl.describe_type()
            return None

        return None

    @staticmethod
    def _check_bounds(name: str, lo: Any, hi: Any, exclusive: bool) -> Optional[str]:
        if lo is None and hi is None:
            return '%s constraint sets neither min nor max' % name
        for bound in (lo, hi):
            if bound is not None and isinstance(bound, float) and math.isnan(bound):
                return '%s constraint has a NaN bound' % name
        if lo is not None and hi is not None:
            if lo > hi:
                return '%s constraint has min %s greater than max %s' % (name, lo, hi)
            if exclusive and lo == hi:
                return '%s constraint (%s, %s) excludes every value' % (name, lo, hi)
        return None

    # -------------------------------------------------------------------------
    # Oneofs
    # -------------------------------------------------------------------------

    def _extract_oneof(self, schema_file: SchemaFile, message: MessageType, oneof: Oneof) -> None:
        raw = oneof.constraints
        if raw is None or not raw.required:
            return
        if oneof.synthetic:
            self._report(schema_file, message, oneof.name,
                         'oneof constraint cannot be applied to a proto3 optional field')
            return
        self.result.oneofs[(message.full_name, oneof.name)] = [
            Constraint(ConstraintKind.ONEOF_REQUIRED, {'fields': list(oneof.fields)},
                       message.full_name, oneof.name)
        ]


def extract(graph: DescriptorGraph) -> ExtractionResult:
    """
    Extract and check the constraints of every requested message.

    Args:
        graph: Resolved descriptor graph.

    Returns:
        ExtractionResult. Its ``diagnostics`` list is empty when every
        constraint is applicable.
    """
    return ConstraintExtractor(graph).extract()
