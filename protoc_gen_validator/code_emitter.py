#!/usr/bin/env python3
# kate: replace-tabs on; indent-width 4;

"""
Code Emitter
============

Renders one Python module per requested .proto file, containing one
``validate_<Message>(msg)`` function per message type.

Generated module layout
-----------------------
1. Header comment and module docstring.
2. Imports: ``re`` (only if a pattern rule exists), the runtime support
   module, and the validator modules of other files that nested rules
   delegate to.
3. ``__all__``: every validator of the file, in declaration order. All
   validator names are fixed before any body is rendered, so mutually
   recursive messages just call each other by name.
4. Precompiled regular expressions, numbered in emission order.
5. For every message: one ``_check_<Message>_<field>(msg)`` function per
   constrained field (and oneof), then ``validate_<Message>(msg)`` which
   collects the violations of all of them into a ValidationResult.

A check function returns a list of Violation objects and stops at the
first failing rule of its field. On repeated and map fields the whole-field
rules (required, count, length) stop the same way, but the element rules
run on every element and report the first failing rule of each. The
validator itself never stops early: every field is checked so that callers
get a complete report.

Validator and check names flatten nesting with ``_``. Two functions of one
module that would end up with the same name are reported as diagnostics
instead of being rendered.

Output is a pure function of the descriptor graph, the compiled rules and
the options: files, messages and fields are visited in declaration order
and no unordered container is iterated.
"""

import keyword
import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from .constraint_extractor import ConstraintKind
from .descriptor_walker import (DescriptorGraph, FieldDecl, FieldKind,
                                MessageType, SchemaFile)
from .diagnostics import DiagnosticsError, GenerationDiagnostic
from .parameters import GeneratorOptions
from .rule_compiler import (FieldRules, MessageRules, OneofRules, RuleSet,
                            ValidationRule, format_number)

RUNTIME_ALIAS = '_rt'


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def function_name(message: MessageType) -> str:
    """Name of the generated validator, e.g. ``validate_Outer_Inner``."""
    return 'validate_' + message.name.replace('.', '_')


def _stem(file_name: str) -> str:
    if file_name.endswith('.proto'):
        file_name = file_name[:-len('.proto')]
    return file_name.replace('-', '_')


def output_filename(file_name: str, suffix: str) -> str:
    """``shop/order.proto`` -> ``shop/order_validator.py``."""
    return _stem(file_name) + suffix + '.py'


def module_name(file_name: str, suffix: str) -> str:
    """``shop/order.proto`` -> ``shop.order_validator``."""
    return _stem(file_name).replace('/', '.') + suffix


def _attr(obj: str, name: str) -> str:
    """Attribute access that stays valid for fields named like keywords."""
    if keyword.iskeyword(name):
        return 'getattr(%s, %r)' % (obj, name)
    return '%s.%s' % (obj, name)


def _number_literal(value: float, integral: bool) -> str:
    value = float(value)
    if math.isinf(value):
        return "float('inf')" if value > 0 else "float('-inf')"
    return format_number(value, integral)


def _tuple_literal(values: List[int]) -> str:
    if len(values) == 1:
        return '(%d,)' % values[0]
    return '(%s)' % ', '.join(str(v) for v in values)


def _escape_docstring(s: Any) -> str:
    """Make text safe inside a triple-quoted docstring."""
    if s is None:
        return ''
    s = str(s)
    s = s.replace('\\', '\\\\')
    s = s.replace('"""', '\\"\\"\\"')
    s = s.replace('\r\n', '\\n').replace('\n', '\\n').replace('\r', '\\n')
    return s


def rule_to_text(rule: ValidationRule) -> str:
    """Short description of a rule for generated docstrings."""
    rt = rule.rule_type
    p = rule.params
    if rt == ConstraintKind.REQUIRED:
        return 'required'
    if rt == ConstraintKind.RANGE:
        integral = p['integral']
        lo = format_number(p['min'], integral) if p['min'] is not None else None
        hi = format_number(p['max'], integral) if p['max'] is not None else None
        if lo is not None and hi is not None:
            if p['exclusive']:
                return 'in (%s, %s)' % (lo, hi)
            return 'in [%s, %s]' % (lo, hi)
        if lo is not None:
            return '%s %s' % ('>' if p['exclusive'] else '>=', lo)
        return '%s %s' % ('<' if p['exclusive'] else '<=', hi)
    if rt in (ConstraintKind.LENGTH, ConstraintKind.COUNT):
        name = 'length' if rt == ConstraintKind.LENGTH else 'count'
        if p['min'] is not None and p['max'] is not None:
            return '%s %d..%d' % (name, p['min'], p['max'])
        if p['min'] is not None:
            return '%s >= %d' % (name, p['min'])
        return '%s <= %d' % (name, p['max'])
    if rt == ConstraintKind.PATTERN:
        if p['substring']:
            return 'contains pattern "%s"' % p['regex']
        return 'matches "%s"' % p['regex']
    if rt == ConstraintKind.DEFINED_ENUM:
        return 'defined %s value' % p['enum']
    if rt == ConstraintKind.NESTED:
        return 'valid %s' % p['message'].full_name
    if rt == ConstraintKind.ONEOF_REQUIRED:
        return 'required'
    return rule.constraint_id


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class GeneratedArtifact:
    """One generated output file."""
    name: str
    content: str


# =============================================================================
# EMITTER
# =============================================================================

class ValidatorEmitter:
    """
    Generates the validator module for one SchemaFile.

    Attributes:
        schema_file: The file being rendered.
        rule_set: Compiled rules of the whole run.
        graph: Resolved descriptor graph (for cross-file delegation).
        options: Generator switches.
    """

    def __init__(self, schema_file: SchemaFile, rule_set: RuleSet,
                 graph: DescriptorGraph, options: Optional[GeneratorOptions] = None):
        self.schema_file = schema_file
        self.rule_set = rule_set
        self.graph = graph
        self.options = options or GeneratorOptions()
        self.messages = list(self._select_messages())

        # Declaration pass: names of everything referenced from bodies.
        self.validator_names: Dict[str, str] = OrderedDict(
            (m.full_name, function_name(m)) for m in self.messages)
        self.imports: Dict[str, str] = OrderedDict()
        self.patterns: Dict[str, str] = OrderedDict()
        self._declare()

    def _select_messages(self) -> Iterator[MessageType]:
        for message in self.schema_file.messages:
            if message.is_map_entry:
                continue
            if (self.options.skip_unconstrained
                    and not self.rule_set.for_message(message).has_rules
                    and not self.rule_set.is_delegation_target(message)):
                continue
            yield message

    def _declare(self) -> None:
        """Collect imports and regex constants in emission order."""
        for message in self.messages:
            for fr in self.rule_set.for_message(message).fields:
                for rule in fr.rules:
                    if rule.rule_type == ConstraintKind.PATTERN:
                        regex = rule.params['regex']
                        if regex not in self.patterns:
                            self.patterns[regex] = '_PATTERN_%d' % len(self.patterns)
                    elif rule.rule_type == ConstraintKind.NESTED:
                        target = rule.params['message']
                        if target.file != self.schema_file.name:
                            module = module_name(target.file, self.options.suffix)
                            if module not in self.imports:
                                self.imports[module] = '_' + module.replace('.', '_')

    def name_collisions(self) -> List[GenerationDiagnostic]:
        """
        Report generated functions of this module that would share a name.

        Names flatten ``.`` to ``_``, so ``Outer.Inner`` and a top-level
        ``Outer_Inner`` both map to ``validate_Outer_Inner``. The later
        declaration is reported against the earlier one.
        """
        owners: Dict[str, str] = {}
        found = []

        def claim(name, message, target):
            owner = '%s.%s' % (message.name, target) if target else message.name
            previous = owners.setdefault(name, owner)
            if previous != owner:
                found.append(GenerationDiagnostic(
                    self.schema_file.name, message.name, target,
                    'generated name %s is already used by %s' % (name, previous)))

        for message in self.messages:
            claim(function_name(message), message, None)
            message_rules = self.rule_set.for_message(message)
            for fr in message_rules.fields:
                claim(self._check_name(message, fr.field.name), message, fr.field.name)
            for oneof_rules in message_rules.oneofs:
                claim(self._check_name(message, oneof_rules.oneof.name), message, oneof_rules.oneof.name)
        return found

    def delegate(self, target: MessageType) -> str:
        """Expression naming the validator of target from this module."""
        if target.file == self.schema_file.name:
            return function_name(target)
        module = module_name(target.file, self.options.suffix)
        return '%s.%s' % (self.imports[module], function_name(target))

    # -------------------------------------------------------------------------
    # Module
    # -------------------------------------------------------------------------

    def generate(self) -> Optional[GeneratedArtifact]:
        """
        Render the module, or return None if the file has no validators.

        Raises:
            DiagnosticsError: Two generated functions would share a name.
        """
        if not self.messages:
            return None
        collisions = self.name_collisions()
        if collisions:
            raise DiagnosticsError(collisions)
        return GeneratedArtifact(
            name=output_filename(self.schema_file.name, self.options.suffix),
            content=''.join(self.generate_source()),
        )

    def generate_source(self) -> Iterator[str]:
        yield '# -*- coding: utf-8 -*-\n'
        yield '# Generated by protoc-gen-validator.  DO NOT EDIT!\n'
        yield '# source: %s\n' % self.schema_file.name
        yield '"""Validators for messages declared in %s."""\n' % _escape_docstring(self.schema_file.name)
        yield '\n'

        if self.patterns:
            yield 'import re\n'
            yield '\n'
        package, _, module = self.options.runtime.rpartition('.')
        if package:
            yield 'from %s import %s as %s\n' % (package, module, RUNTIME_ALIAS)
        else:
            yield 'import %s as %s\n' % (module, RUNTIME_ALIAS)
        for module, alias in self.imports.items():
            yield 'import %s as %s\n' % (module, alias)
        yield '\n'

        yield '__all__ = [\n'
        for name in self.validator_names.values():
            yield "    '%s',\n" % name
        yield ']\n'

        if self.patterns:
            yield '\n'
            for regex, const in self.patterns.items():
                yield '%s = re.compile(%r)\n' % (const, regex)

        for message in self.messages:
            message_rules = self.rule_set.for_message(message)
            for fr in message_rules.fields:
                yield '\n\n'
                yield from self.generate_field_check(message, fr)
            for oneof_rules in message_rules.oneofs:
                yield '\n\n'
                yield from self.generate_oneof_check(message, oneof_rules)
            yield '\n\n'
            yield from self.generate_validator(message, message_rules)

    # -------------------------------------------------------------------------
    # Validator functions
    # -------------------------------------------------------------------------

    def _check_name(self, message: MessageType, target: str) -> str:
        return '_check_%s_%s' % (message.name.replace('.', '_'), target)

    def generate_validator(self, message: MessageType, message_rules: MessageRules) -> Iterator[str]:
        yield 'def %s(msg):\n' % function_name(message)
        if self.options.docstrings:
            yield from self.generate_docstring(message, message_rules)

        if not message_rules.has_rules:
            yield '    return %s.VALID\n' % RUNTIME_ALIAS
            return

        yield '    violations = []\n'
        for fr in message_rules.fields:
            yield '    violations.extend(%s(msg))\n' % self._check_name(message, fr.field.name)
        for oneof_rules in message_rules.oneofs:
            yield '    violations.extend(%s(msg))\n' % self._check_name(message, oneof_rules.oneof.name)
        yield '    return %s.ValidationResult(violations)\n' % RUNTIME_ALIAS

    def generate_docstring(self, message: MessageType, message_rules: MessageRules) -> Iterator[str]:
        yield '    """Validate %s.\n' % _escape_docstring(message.full_name)
        yield '\n'
        yield '    Fields and constraints:\n'
        for decl in message.fields:
            fr = message_rules.for_field(decl.name)
            if fr is None:
                text = 'no constraints'
            else:
                text = '; '.join(rule_to_text(r) for r in fr.rules)
            yield '    - %s: %s\n' % (_escape_docstring(decl.name), _escape_docstring(text))
        for oneof_rules in message_rules.oneofs:
            text = '; '.join(rule_to_text(r) for r in oneof_rules.rules)
            yield '    - oneof %s: %s\n' % (_escape_docstring(oneof_rules.oneof.name), _escape_docstring(text))
        yield '    """\n'

    # -------------------------------------------------------------------------
    # Field checks
    # -------------------------------------------------------------------------

    def _violation(self, path: str, rule: ValidationRule) -> str:
        return '%s.Violation(%s, %r, %r)' % (RUNTIME_ALIAS, path, rule.constraint_id, rule.message)

    def _condition(self, rule: ValidationRule, expr: str, decl: FieldDecl) -> str:
        """Python expression that is true when rule is violated by expr."""
        rt = rule.rule_type
        p = rule.params

        if rt in (ConstraintKind.COUNT, ConstraintKind.LENGTH):
            size = 'len(%s)' % expr
            if p['min'] is not None and p['max'] is not None:
                return 'not (%d <= %s <= %d)' % (p['min'], size, p['max'])
            if p['min'] is not None:
                return '%s < %d' % (size, p['min'])
            return '%s > %d' % (size, p['max'])

        if rt == ConstraintKind.RANGE:
            op = '<' if p['exclusive'] else '<='
            lo = _number_literal(p['min'], p['integral']) if p['min'] is not None else None
            hi = _number_literal(p['max'], p['integral']) if p['max'] is not None else None
            if lo is not None and hi is not None:
                return 'not (%s %s %s %s %s)' % (lo, op, expr, op, hi)
            if lo is not None:
                return 'not (%s %s %s)' % (lo, op, expr)
            return 'not (%s %s %s)' % (expr, op, hi)

        if rt == ConstraintKind.DEFINED_ENUM:
            return '%s not in %s' % (expr, _tuple_literal(p['values']))

        if rt == ConstraintKind.PATTERN:
            method = 'search' if p['substring'] else 'fullmatch'
            return '%s.%s(%s) is None' % (self.patterns[p['regex']], method, expr)

        raise ValueError('No condition for %s on %s' % (rt, decl.name))

    def generate_field_check(self, message: MessageType, fr: FieldRules) -> Iterator[str]:
        decl = fr.field
        path = repr(decl.name)
        access = _attr('msg', decl.name)
        required = fr.required
        rest = [r for r in fr.rules if r is not required]

        yield 'def %s(msg):\n' % self._check_name(message, decl.name)

        if decl.has_presence:
            has = 'msg.HasField(%r)' % decl.name
            if required is not None:
                if decl.kind == FieldKind.MESSAGE:
                    condition = 'not %s' % has
                else:
                    condition = 'not %s or not %s' % (has, access)
                yield '    if %s:\n' % condition
                yield '        return [%s]\n' % self._violation(path, required)
            elif rest:
                yield '    if not %s:\n' % has
                yield '        return []\n'
            if not rest:
                yield '    return []\n'
                return
            yield '    value = %s\n' % access
        else:
            yield '    value = %s\n' % access
            if required is not None:
                yield '    if not value:\n'
                yield '        return [%s]\n' % self._violation(path, required)

        for rule in rest:
            if rule.whole_field:
                yield '    if %s:\n' % self._condition(rule, 'value', decl)
                yield '        return [%s]\n' % self._violation(path, rule)

        element_rules = [r for r in rest if not r.whole_field]
        scalar_rules = [r for r in element_rules if r.rule_type != ConstraintKind.NESTED]
        nested_rules = [r for r in element_rules if r.rule_type == ConstraintKind.NESTED]

        if decl.is_repeated or decl.is_map:
            if decl.is_map:
                loop = 'for key, item in %s.sorted_items(value):' % RUNTIME_ALIAS
                item_path = '%s.element_path(%s, key)' % (RUNTIME_ALIAS, path)
            else:
                loop = 'for index, item in enumerate(value):'
                item_path = '%s.element_path(%s, index)' % (RUNTIME_ALIAS, path)

            if not element_rules:
                yield '    return []\n'
                return

            # Every element is checked; each one stops at its first failing rule.
            yield '    violations = []\n'
            yield '    %s\n' % loop
            indent = '        '
            for i, rule in enumerate(scalar_rules):
                yield '%s%s %s:\n' % (indent, 'if' if i == 0 else 'elif', self._condition(rule, 'item', decl))
                yield '%s    violations.append(%s)\n' % (indent, self._violation(item_path, rule))
            if nested_rules and scalar_rules:
                yield '%selse:\n' % indent
                indent += '    '
            for rule in nested_rules:
                yield '%sresult = %s(item)\n' % (indent, self.delegate(rule.params['message']))
                yield '%sif not result:\n' % indent
                if rule.source is not None and rule.source.human_error:
                    yield '%s    violations.append(%s)\n' % (indent, self._violation(item_path, rule))
                else:
                    yield '%s    violations.extend(%s.nested(result, %s))\n' % (indent, RUNTIME_ALIAS, item_path)
            yield '    return violations\n'
            return
        else:
            for rule in scalar_rules:
                yield '    if %s:\n' % self._condition(rule, 'value', decl)
                yield '        return [%s]\n' % self._violation(path, rule)

            for rule in nested_rules:
                yield '    result = %s(value)\n' % self.delegate(rule.params['message'])
                yield '    if not result:\n'
                if rule.source is not None and rule.source.human_error:
                    yield '        return [%s]\n' % self._violation(path, rule)
                else:
                    yield '        return %s.nested(result, %s)\n' % (RUNTIME_ALIAS, path)

        yield '    return []\n'

    def generate_oneof_check(self, message: MessageType, oneof_rules: OneofRules) -> Iterator[str]:
        oneof = oneof_rules.oneof
        yield 'def %s(msg):\n' % self._check_name(message, oneof.name)
        for rule in oneof_rules.rules:
            yield '    if msg.WhichOneof(%r) is None:\n' % oneof.name
            yield '        return [%s]\n' % self._violation(repr(oneof.name), rule)
        yield '    return []\n'


def emit(graph: DescriptorGraph, rule_set: RuleSet,
         options: Optional[GeneratorOptions] = None) -> List[GeneratedArtifact]:
    """
    Render the validator modules of every requested file, in request order.

    Files whose messages are all pruned (or that declare no message) produce
    no artifact.
    """
    collisions = check_names(graph, rule_set, options)
    if collisions:
        raise DiagnosticsError(collisions)

    artifacts = []
    for schema_file in graph.files:
        artifact = ValidatorEmitter(schema_file, rule_set, graph, options).generate()
        if artifact is not None:
            artifacts.append(artifact)
    return artifacts


def check_names(graph: DescriptorGraph, rule_set: RuleSet,
                options: Optional[GeneratorOptions] = None) -> List[GenerationDiagnostic]:
    """Name collisions of every requested file, in request order."""
    diagnostics = []
    for schema_file in graph.files:
        diagnostics.extend(ValidatorEmitter(schema_file, rule_set, graph, options).name_collisions())
    return diagnostics
