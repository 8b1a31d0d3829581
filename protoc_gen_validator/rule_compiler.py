#!/usr/bin/env python3
# kate: replace-tabs on; indent-width 4;

"""
Rule Compiler
=============

Turns the Constraint records of the extractor into ordered lists of
ValidationRule objects, one list per constrained field (and per constrained
oneof). The code emitter renders these lists without having to know
anything about option decoding.

Rule semantics
--------------
- RANGE: ``min <= v <= max``, or ``min < v < max`` when exclusive. Either
  bound may be absent. NaN never satisfies a range. Bounds on ``float``
  fields are rounded to 32-bit precision, like the values they compare to.
- LENGTH: string length in Unicode code points, bytes length in bytes, and
  element count for repeated and map fields.
- COUNT: element count of a repeated or map field.
- PATTERN: ``re.fullmatch`` on the value, or ``re.search`` when the
  constraint is marked as a substring search.
- REQUIRED: the field must not hold its zero/empty/unset value.
- DEFINED_ENUM: the value must be one of the enum's declared numbers.
- NESTED: the referenced message's own validator must pass (per element /
  per map value).
- ONEOF_REQUIRED: one member of the oneof must be set.

Evaluation order
----------------
Within a field, rules run cheapest first and the first failure ends the
evaluation of that field:

    REQUIRED < COUNT < LENGTH < RANGE < DEFINED_ENUM < PATTERN < NESTED

so a required-but-unset message field is never recursed into. On repeated
and map fields the element rules run on every element once the whole-field
rules pass, and each element stops at its own first failure. Across fields,
every failure is collected.
"""

import struct
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .constraint_extractor import Constraint, ConstraintKind, ExtractionResult
from .descriptor_walker import (DescriptorGraph, FieldDecl, FieldKind,
                                MessageType, Oneof)
from .diagnostics import DiagnosticsError

RULE_RANK = {
    ConstraintKind.REQUIRED: 0,
    ConstraintKind.COUNT: 1,
    ConstraintKind.LENGTH: 2,
    ConstraintKind.RANGE: 3,
    ConstraintKind.DEFINED_ENUM: 4,
    ConstraintKind.PATTERN: 5,
    ConstraintKind.NESTED: 6,
    ConstraintKind.ONEOF_REQUIRED: 0,
}

# Rules checked once against the whole field value; all others are checked
# per element for repeated and map fields.
WHOLE_FIELD_KINDS = frozenset([
    ConstraintKind.REQUIRED, ConstraintKind.COUNT, ConstraintKind.LENGTH,
])


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class ValidationRule:
    """
    Compiled form of one Constraint.

    Attributes:
        rule_type: The ConstraintKind of the originating constraint.
        constraint_id: Identifier reported in violations (``range``...).
        params: Rule parameters in emit-ready form.
        message: Failure message reported when the rule is violated.
        rank: Evaluation rank within the field (lower runs first).
        source: The Constraint this rule was compiled from.
    """
    rule_type: ConstraintKind
    constraint_id: str
    params: Dict[str, Any] = field(default_factory=dict, compare=False)
    message: str = ''
    rank: int = 0
    source: Optional[Constraint] = field(default=None, compare=False, repr=False)

    @property
    def whole_field(self) -> bool:
        return self.rule_type in WHOLE_FIELD_KINDS


@dataclass
class FieldRules:
    field: FieldDecl
    rules: Tuple[ValidationRule, ...]

    @property
    def element_rules(self) -> Tuple[ValidationRule, ...]:
        return tuple(r for r in self.rules if not r.whole_field)

    @property
    def required(self) -> Optional[ValidationRule]:
        for r in self.rules:
            if r.rule_type == ConstraintKind.REQUIRED:
                return r
        return None


@dataclass
class OneofRules:
    oneof: Oneof
    rules: Tuple[ValidationRule, ...]


@dataclass
class MessageRules:
    message: MessageType
    fields: List[FieldRules] = field(default_factory=list)
    oneofs: List[OneofRules] = field(default_factory=list)

    @property
    def has_rules(self) -> bool:
        return bool(self.fields or self.oneofs)

    def for_field(self, name: str) -> Optional[FieldRules]:
        for fr in self.fields:
            if fr.field.name == name:
                return fr
        return None


class RuleSet:
    """
    Compiled rules of every requested message.

    Attributes:
        messages: MessageRules by message full name, in emission order.
        delegation_targets: Full names of messages that some NESTED rule
                            delegates to, in first-reference order.
    """

    def __init__(self):
        self.messages: Dict[str, MessageRules] = OrderedDict()
        self.delegation_targets: List[str] = []

    def for_message(self, message: MessageType) -> MessageRules:
        rules = self.messages.get(message.full_name)
        if rules is None:
            return MessageRules(message)
        return rules

    def is_delegation_target(self, message: MessageType) -> bool:
        return message.full_name in self.delegation_targets


# =============================================================================
# MESSAGE TEXT
# =============================================================================

def format_number(value: float, integral: bool) -> str:
    """Render a bound for messages; integral bounds of integer fields as ints."""
    if integral and float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def float32(value: Optional[float]) -> Optional[float]:
    """
    Round a bound to the nearest 32-bit float.

    A ``float`` field stores 0.1 as 0.10000000149011612, so a bound written
    as 0.1 has to be rounded the same way to accept it. Bounds outside the
    float32 range are kept as they are.
    """
    if value is None:
        return None
    try:
        return struct.unpack('f', struct.pack('f', value))[0]
    except OverflowError:
        return value


def _describe_range(lo: Any, hi: Any, exclusive: bool, integral: bool) -> str:
    lo_s = format_number(lo, integral) if lo is not None else None
    hi_s = format_number(hi, integral) if hi is not None else None
    if lo_s is not None and hi_s is not None:
        if exclusive:
            return 'must be in range (%s, %s)' % (lo_s, hi_s)
        return 'must be in range [%s, %s]' % (lo_s, hi_s)
    if lo_s is not None:
        return 'must be %s %s' % ('>' if exclusive else '>=', lo_s)
    return 'must be %s %s' % ('<' if exclusive else '<=', hi_s)


def _describe_size(lo: Any, hi: Any, unit: str, what: str) -> str:
    if lo is not None and hi is not None:
        if lo == hi:
            return '%s must be exactly %d %s' % (what, lo, unit)
        return '%s must be between %d and %d %s' % (what, lo, hi, unit)
    if lo is not None:
        return '%s must be at least %d %s' % (what, lo, unit)
    return '%s must be at most %d %s' % (what, hi, unit)


# =============================================================================
# COMPILER
# =============================================================================

class RuleCompiler:
    """Compiles an ExtractionResult into a RuleSet."""

    def __init__(self, extraction: ExtractionResult, graph: DescriptorGraph):
        if extraction.diagnostics:
            raise DiagnosticsError(extraction.diagnostics)
        self.extraction = extraction
        self.graph = graph

    def compile(self) -> RuleSet:
        rule_set = RuleSet()
        for _, message in self.graph.iter_messages():
            if message.is_map_entry:
                continue
            message_rules = MessageRules(message)

            for decl in message.fields:
                constraints = self.extraction.for_field(message, decl)
                if not constraints:
                    continue
                rules = self.compile_field(decl, constraints)
                message_rules.fields.append(FieldRules(decl, rules))
                for rule in rules:
                    if rule.rule_type == ConstraintKind.NESTED:
                        target = rule.params['message'].full_name
                        if target not in rule_set.delegation_targets:
                            rule_set.delegation_targets.append(target)

            for oneof in message.oneofs:
                constraints = self.extraction.for_oneof(message, oneof)
                if constraints:
                    message_rules.oneofs.append(
                        OneofRules(oneof, tuple(self.compile_oneof(oneof, c) for c in constraints)))

            if message_rules.has_rules:
                rule_set.messages[message.full_name] = message_rules
        return rule_set

    def compile_field(self, decl: FieldDecl, constraints: List[Constraint]) -> Tuple[ValidationRule, ...]:
        """Compile the constraints of one field, sorted by evaluation rank."""
        compiled = [self.compile_constraint(decl, c) for c in constraints]
        order = sorted(range(len(compiled)), key=lambda i: (compiled[i].rank, i))
        return tuple(compiled[i] for i in order)

    def compile_constraint(self, decl: FieldDecl, constraint: Constraint) -> ValidationRule:
        kind = constraint.kind
        element = decl.element
        p = constraint.params

        if kind == ConstraintKind.REQUIRED:
            params = {}
            text = 'value is required'

        elif kind == ConstraintKind.RANGE:
            integral = element.kind.is_integral
            lo, hi = p['min'], p['max']
            if element.kind == FieldKind.FLOAT:
                lo, hi = float32(lo), float32(hi)
            params = {'min': lo, 'max': hi,
                      'exclusive': bool(p['exclusive']), 'integral': integral}
            text = _describe_range(p['min'], p['max'], params['exclusive'], integral)

        elif kind == ConstraintKind.LENGTH:
            if decl.is_repeated or decl.is_map:
                unit, what = 'items', 'count'
            elif decl.kind == FieldKind.BYTES:
                unit, what = 'bytes', 'length'
            else:
                unit, what = 'characters', 'length'
            params = {'min': p['min'], 'max': p['max']}
            text = _describe_size(p['min'], p['max'], unit, what)

        elif kind == ConstraintKind.COUNT:
            params = {'min': p['min'], 'max': p['max']}
            text = _describe_size(p['min'], p['max'], 'items', 'count')

        elif kind == ConstraintKind.PATTERN:
            params = {'regex': p['regex'], 'substring': bool(p['substring'])}
            if params['substring']:
                text = 'must contain a match for pattern "%s"' % p['regex']
            else:
                text = 'must match pattern "%s"' % p['regex']

        elif kind == ConstraintKind.DEFINED_ENUM:
            enum_type = element.enum_type
            params = {'values': enum_type.numbers, 'enum': enum_type.full_name}
            text = 'must be a defined value of %s' % enum_type.full_name

        elif kind == ConstraintKind.NESTED:
            params = {'message': element.message_type}
            text = 'nested %s is invalid' % element.message_type.full_name

        else:
            raise ValueError('Unexpected field constraint %s' % kind)

        return ValidationRule(
            rule_type=kind,
            constraint_id=kind.value,
            params=params,
            message=constraint.human_error or text,
            rank=RULE_RANK[kind],
            source=constraint,
        )

    def compile_oneof(self, oneof: Oneof, constraint: Constraint) -> ValidationRule:
        members = constraint.params['fields']
        return ValidationRule(
            rule_type=constraint.kind,
            constraint_id='required',
            params={'fields': list(members)},
            message='one of %s must be set' % ', '.join(members),
            rank=RULE_RANK[constraint.kind],
            source=constraint,
        )


def compile_rules(extraction: ExtractionResult, graph: DescriptorGraph) -> RuleSet:
    """
    Compile extracted constraints into per-field rule lists.

    Raises:
        DiagnosticsError: The extraction result still carries diagnostics.
    """
    return RuleCompiler(extraction, graph).compile()
