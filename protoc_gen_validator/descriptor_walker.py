#!/usr/bin/env python3
# kate: replace-tabs on; indent-width 4;

"""
Descriptor Walker
=================

Turns the ``FileDescriptorProto`` list of a ``CodeGeneratorRequest`` into a
resolved, in-memory descriptor graph.

Every message and enum of every file in the request (the requested files and
all of their transitive dependencies) is registered in a single arena keyed
by its fully qualified name. Field type references are then resolved against
that arena, so a message referenced from ten places is still one
``MessageType`` object, and cyclic references (A contains B, B contains A)
simply point back at objects that already exist.

Traversal order
---------------
- Files: in ``file_to_generate`` order.
- Messages: declaration order within a file, nested types right after their
  parent (pre-order).
- Fields: declaration order within a message.

The graph is built once per run and is treated as read-only afterwards.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from google.protobuf import descriptor_pb2

from . import proto
from .diagnostics import GenerationError, ResolutionError

_FDP = descriptor_pb2.FieldDescriptorProto


# =============================================================================
# FIELD CLASSIFICATION
# =============================================================================

class FieldKind(Enum):
    """Declared type of a field (or of a map key / map value)."""
    DOUBLE = 'double'
    FLOAT = 'float'
    INT32 = 'int32'
    INT64 = 'int64'
    UINT32 = 'uint32'
    UINT64 = 'uint64'
    SINT32 = 'sint32'
    SINT64 = 'sint64'
    FIXED32 = 'fixed32'
    FIXED64 = 'fixed64'
    SFIXED32 = 'sfixed32'
    SFIXED64 = 'sfixed64'
    BOOL = 'bool'
    STRING = 'string'
    BYTES = 'bytes'
    ENUM = 'enum'
    MESSAGE = 'message'

    @property
    def is_numeric(self) -> bool:
        return self in NUMERIC_KINDS

    @property
    def is_integral(self) -> bool:
        return self in NUMERIC_KINDS and self not in (FieldKind.FLOAT, FieldKind.DOUBLE)


NUMERIC_KINDS = frozenset([
    FieldKind.DOUBLE, FieldKind.FLOAT,
    FieldKind.INT32, FieldKind.INT64, FieldKind.UINT32, FieldKind.UINT64,
    FieldKind.SINT32, FieldKind.SINT64, FieldKind.FIXED32, FieldKind.FIXED64,
    FieldKind.SFIXED32, FieldKind.SFIXED64,
])

_KIND_BY_TYPE = {
    _FDP.TYPE_DOUBLE: FieldKind.DOUBLE,
    _FDP.TYPE_FLOAT: FieldKind.FLOAT,
    _FDP.TYPE_INT64: FieldKind.INT64,
    _FDP.TYPE_UINT64: FieldKind.UINT64,
    _FDP.TYPE_INT32: FieldKind.INT32,
    _FDP.TYPE_FIXED64: FieldKind.FIXED64,
    _FDP.TYPE_FIXED32: FieldKind.FIXED32,
    _FDP.TYPE_BOOL: FieldKind.BOOL,
    _FDP.TYPE_STRING: FieldKind.STRING,
    _FDP.TYPE_GROUP: FieldKind.MESSAGE,
    _FDP.TYPE_MESSAGE: FieldKind.MESSAGE,
    _FDP.TYPE_BYTES: FieldKind.BYTES,
    _FDP.TYPE_UINT32: FieldKind.UINT32,
    _FDP.TYPE_ENUM: FieldKind.ENUM,
    _FDP.TYPE_SFIXED32: FieldKind.SFIXED32,
    _FDP.TYPE_SFIXED64: FieldKind.SFIXED64,
    _FDP.TYPE_SINT32: FieldKind.SINT32,
    _FDP.TYPE_SINT64: FieldKind.SINT64,
}


class Cardinality(Enum):
    SINGULAR = 'singular'
    REPEATED = 'repeated'
    MAP = 'map'


# =============================================================================
# DATA STRUCTURES
# =============================================================================
# Graph nodes compare by identity (eq=False): the same MessageType object is
# shared by every reference to it, and the graph may contain cycles.

@dataclass(eq=False)
class EnumType:
    full_name: str
    name: str
    file: str
    values: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def numbers(self) -> List[int]:
        return sorted(set(number for _, number in self.values))


@dataclass(eq=False)
class FieldDecl:
    """
    One field of a message.

    For map fields ``key_kind`` holds the key type and ``value`` is a
    synthetic singular FieldDecl describing the map value; element-wise
    constraints (range, pattern, nested...) apply to that value.

    Attributes:
        name: Field name as declared (and as used by the Python protobuf API).
        number: Field number.
        kind: Declared type.
        cardinality: SINGULAR, REPEATED or MAP.
        has_presence: True if the protobuf runtime tracks whether the field
                      is set (message fields, oneof members, proto2 and
                      proto3 ``optional`` scalars).
        oneof: Name of the containing (non-synthetic) oneof, if any.
        type_name: Unresolved type reference as found in the descriptor.
        constraints: Raw ``protovalidator.FieldConstraints`` option or None.
    """
    name: str
    number: int
    kind: FieldKind
    cardinality: Cardinality = Cardinality.SINGULAR
    has_presence: bool = False
    oneof: Optional[str] = None
    type_name: str = ''
    message_type: Optional['MessageType'] = field(default=None, repr=False)
    enum_type: Optional[EnumType] = field(default=None, repr=False)
    key_kind: Optional[FieldKind] = None
    value: Optional['FieldDecl'] = field(default=None, repr=False)
    constraints: Any = field(default=None, repr=False)

    @property
    def is_repeated(self) -> bool:
        return self.cardinality == Cardinality.REPEATED

    @property
    def is_map(self) -> bool:
        return self.cardinality == Cardinality.MAP

    @property
    def element(self) -> 'FieldDecl':
        """The decl that element-wise constraints are checked against."""
        if self.is_map:
            return self.value
        return self

    def describe_type(self) -> str:
        if self.is_map:
            return 'map<%s, %s>' % (self.key_kind.value, self.value.describe_type())
        if self.kind == FieldKind.MESSAGE and self.message_type is not None:
            name = self.message_type.full_name
        elif self.kind == FieldKind.ENUM and self.enum_type is not None:
            name = self.enum_type.full_name
        else:
            name = self.kind.value
        if self.is_repeated:
            return 'repeated ' + name
        return name


@dataclass(eq=False)
class Oneof:
    name: str
    fields: List[str] = field(default_factory=list)
    constraints: Any = field(default=None, repr=False)
    synthetic: bool = False


@dataclass(eq=False)
class MessageType:
    """
    A message declaration. ``name`` is relative to the file package
    (``Outer.Inner``); ``full_name`` includes the package.
    """
    full_name: str
    name: str
    file: str
    fields: List[FieldDecl] = field(default_factory=list, repr=False)
    oneofs: List[Oneof] = field(default_factory=list, repr=False)
    is_map_entry: bool = False

    def field_by_name(self, name: str) -> Optional[FieldDecl]:
        for f in self.fields:
            if f.name == name:
                return f
        return None


@dataclass(eq=False)
class SchemaFile:
    name: str
    package: str
    syntax: str
    dependencies: Tuple[str, ...] = ()
    messages: List[MessageType] = field(default_factory=list, repr=False)
    enums: List[EnumType] = field(default_factory=list, repr=False)

    @property
    def is_proto3(self) -> bool:
        return self.syntax == 'proto3'


class DescriptorGraph:
    """
    Resolved view of every file in a generation request.

    Attributes:
        files: Requested SchemaFiles, in request order.
        all_files: Every SchemaFile by name, including dependencies.
        messages: Arena of every MessageType by full name.
        enums: Arena of every EnumType by full name.
    """

    def __init__(self):
        self.files: List[SchemaFile] = []
        self.all_files: Dict[str, SchemaFile] = OrderedDict()
        self.messages: Dict[str, MessageType] = OrderedDict()
        self.enums: Dict[str, EnumType] = OrderedDict()

    def file(self, name: str) -> SchemaFile:
        return self.all_files[name]

    def message(self, full_name: str) -> MessageType:
        return self.messages[full_name.lstrip('.')]

    def enum(self, full_name: str) -> EnumType:
        return self.enums[full_name.lstrip('.')]

    def iter_messages(self) -> Iterable[Tuple[SchemaFile, MessageType]]:
        """Messages of the requested files in emission order."""
        for schema_file in self.files:
            for message in schema_file.messages:
                yield schema_file, message


# =============================================================================
# WALKER
# =============================================================================

def _join(prefix: str, name: str) -> str:
    return prefix + '.' + name if prefix else name


def _options_or_none(desc: Any) -> Any:
    if desc.HasField('options'):
        return desc.options
    return None


class DescriptorWalker:
    """
    Two-pass builder for a DescriptorGraph.

    Pass 1 registers every message and enum of every file in the arena.
    Pass 2 builds the fields and resolves their type references; since all
    types already exist at that point, forward, cross-file and cyclic
    references need no special handling.
    """

    def __init__(self, file_descriptors: Sequence[descriptor_pb2.FileDescriptorProto]):
        self.file_descriptors = list(file_descriptors)
        self.graph = DescriptorGraph()
        self._pending: List[Tuple[SchemaFile, MessageType, Any]] = []
        self._message_protos: Dict[str, Any] = {}

    def walk(self, files_to_generate: Sequence[str]) -> DescriptorGraph:
        for fdesc in self.file_descriptors:
            self._register_file(fdesc)

        for schema_file, message, desc in self._pending:
            self._build_message(schema_file, message, desc)

        for name in files_to_generate:
            if name not in self.graph.all_files:
                raise GenerationError('%s: requested for generation but not present in the request' % name)
            self.graph.files.append(self.graph.all_files[name])
        return self.graph

    # -------------------------------------------------------------------------
    # Pass 1: registration
    # -------------------------------------------------------------------------

    def _register_file(self, fdesc: descriptor_pb2.FileDescriptorProto) -> None:
        schema_file = SchemaFile(
            name=fdesc.name,
            package=fdesc.package,
            syntax=fdesc.syntax or 'proto2',
            dependencies=tuple(fdesc.dependency),
        )
        self.graph.all_files[fdesc.name] = schema_file

        for enum_desc in fdesc.enum_type:
            self._register_enum(schema_file, enum_desc, '')
        for msg_desc in fdesc.message_type:
            self._register_message(schema_file, msg_desc, '')

    def _register_enum(self, schema_file: SchemaFile, enum_desc: Any, scope: str) -> None:
        name = _join(scope, enum_desc.name)
        enum_type = EnumType(
            full_name=_join(schema_file.package, name),
            name=name,
            file=schema_file.name,
            values=[(v.name, v.number) for v in enum_desc.value],
        )
        self.graph.enums[enum_type.full_name] = enum_type
        schema_file.enums.append(enum_type)

    def _register_message(self, schema_file: SchemaFile, msg_desc: Any, scope: str) -> None:
        name = _join(scope, msg_desc.name)
        message = MessageType(
            full_name=_join(schema_file.package, name),
            name=name,
            file=schema_file.name,
            is_map_entry=msg_desc.options.map_entry,
        )
        self.graph.messages[message.full_name] = message
        self._message_protos[message.full_name] = msg_desc
        self._pending.append((schema_file, message, msg_desc))
        schema_file.messages.append(message)

        for enum_desc in msg_desc.enum_type:
            self._register_enum(schema_file, enum_desc, name)
        for nested_desc in msg_desc.nested_type:
            self._register_message(schema_file, nested_desc, name)

    # -------------------------------------------------------------------------
    # Pass 2: fields and references
    # -------------------------------------------------------------------------

    def _build_message(self, schema_file: SchemaFile, message: MessageType, desc: Any) -> None:
        synthetic = set()
        for f in desc.field:
            if f.proto3_optional and f.HasField('oneof_index'):
                synthetic.add(f.oneof_index)

        for index, oneof_desc in enumerate(desc.oneof_decl):
            message.oneofs.append(Oneof(
                name=oneof_desc.name,
                constraints=proto.oneof_constraints(_options_or_none(oneof_desc)),
                synthetic=index in synthetic,
            ))

        for f in desc.field:
            decl = self._build_field(schema_file, message, f)
            if f.HasField('oneof_index') and f.oneof_index not in synthetic:
                oneof = message.oneofs[f.oneof_index]
                oneof.fields.append(decl.name)
                decl.oneof = oneof.name
                decl.has_presence = True
            message.fields.append(decl)

    def _build_field(self, schema_file: SchemaFile, message: MessageType, f: Any) -> FieldDecl:
        decl = FieldDecl(
            name=f.name,
            number=f.number,
            kind=_KIND_BY_TYPE[f.type],
            type_name=f.type_name,
            constraints=proto.field_constraints(_options_or_none(f)),
        )
        self._resolve_type(schema_file, message, decl)

        if f.label == _FDP.LABEL_REPEATED:
            if decl.message_type is not None and decl.message_type.is_map_entry:
                self._make_map(schema_file, decl)
            else:
                decl.cardinality = Cardinality.REPEATED
        elif decl.kind == FieldKind.MESSAGE:
            decl.has_presence = True
        elif schema_file.is_proto3:
            decl.has_presence = f.proto3_optional
        else:
            decl.has_presence = True
        return decl

    def _make_map(self, schema_file: SchemaFile, decl: FieldDecl) -> None:
        entry = decl.message_type
        entry_desc = self._message_protos[entry.full_name]
        key_desc = value_desc = None
        for f in entry_desc.field:
            if f.number == 1:
                key_desc = f
            elif f.number == 2:
                value_desc = f

        decl.cardinality = Cardinality.MAP
        decl.key_kind = _KIND_BY_TYPE[key_desc.type]
        value = FieldDecl(
            name=decl.name,
            number=decl.number,
            kind=_KIND_BY_TYPE[value_desc.type],
            type_name=value_desc.type_name,
        )
        self._resolve_type(schema_file, entry, value)
        decl.value = value
        decl.message_type = None

    def _resolve_type(self, schema_file: SchemaFile, message: MessageType, decl: FieldDecl) -> None:
        if decl.kind == FieldKind.MESSAGE:
            arena = self.graph.messages
        elif decl.kind == FieldKind.ENUM:
            arena = self.graph.enums
        else:
            return

        full_name = self._lookup(arena, decl.type_name, message.full_name)
        if full_name is None:
            raise ResolutionError(schema_file.name, message.name, decl.name, decl.type_name)

        if decl.kind == FieldKind.MESSAGE:
            decl.message_type = arena[full_name]
        else:
            decl.enum_type = arena[full_name]

    @staticmethod
    def _lookup(arena: Dict[str, Any], type_name: str, scope: str) -> Optional[str]:
        """
        Resolve a type reference the way protoc does.

        Fully qualified references (leading dot) are looked up directly.
        Relative ones are tried in the innermost enclosing scope first and
        then in each outer scope.
        """
        if not type_name:
            return None
        if type_name.startswith('.'):
            candidate = type_name[1:]
            return candidate if candidate in arena else None

        parts = scope.split('.') if scope else []
        while True:
            candidate = _join('.'.join(parts), type_name)
            if candidate in arena:
                return candidate
            if not parts:
                return None
            parts.pop()


def walk(file_descriptors: Sequence[descriptor_pb2.FileDescriptorProto],
         files_to_generate: Sequence[str]) -> DescriptorGraph:
    """
    Build the resolved descriptor graph for a generation request.

    Args:
        file_descriptors: Every FileDescriptorProto of the request, i.e. the
                          requested files plus their transitive dependencies.
        files_to_generate: Names of the files to generate output for.

    Returns:
        The resolved DescriptorGraph.

    Raises:
        ResolutionError: A field references a type absent from the set.
    """
    return DescriptorWalker(file_descriptors).walk(files_to_generate)
