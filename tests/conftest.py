"""
Pytest configuration and shared fixtures for protoc-gen-validator tests.

Key concepts:
    - Schemas are built in Python as FileDescriptorProto objects, exactly as
      protoc would hand them to the plugin, with constraints attached via
      the registered (protovalidator.field) extension.
    - Generated modules are written to a temporary directory, imported, and
      run against dynamic message classes built from the same descriptors.
    - Integration tests compile real .proto text with the protoc bundled in
      grpcio-tools and are skipped when it is not installed.
"""

import importlib
import os
import re
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import pytest
from google.protobuf import descriptor_pb2
from google.protobuf import descriptor_pool
from google.protobuf import message_factory
from google.protobuf.compiler import plugin_pb2

from protoc_gen_validator import proto


# =============================================================================
# Path Constants
# =============================================================================

# Repository root directory
REPO_ROOT = Path(__file__).parent.parent.absolute()

# Tests directory
TESTS_DIR = Path(__file__).parent.absolute()

# .proto sources used by the integration tests
PROTOS_DIR = TESTS_DIR / "protos"

# Pattern files for generated-source checks
EXPECTED_DIR = TESTS_DIR / "expected"


# =============================================================================
# Schema Builders
# =============================================================================

_FDP = descriptor_pb2.FieldDescriptorProto

TYPES = {
    'double': _FDP.TYPE_DOUBLE,
    'float': _FDP.TYPE_FLOAT,
    'int64': _FDP.TYPE_INT64,
    'uint64': _FDP.TYPE_UINT64,
    'int32': _FDP.TYPE_INT32,
    'fixed64': _FDP.TYPE_FIXED64,
    'fixed32': _FDP.TYPE_FIXED32,
    'bool': _FDP.TYPE_BOOL,
    'string': _FDP.TYPE_STRING,
    'message': _FDP.TYPE_MESSAGE,
    'bytes': _FDP.TYPE_BYTES,
    'uint32': _FDP.TYPE_UINT32,
    'enum': _FDP.TYPE_ENUM,
    'sfixed32': _FDP.TYPE_SFIXED32,
    'sfixed64': _FDP.TYPE_SFIXED64,
    'sint32': _FDP.TYPE_SINT32,
    'sint64': _FDP.TYPE_SINT64,
}


def _entry_name(field_name: str) -> str:
    return ''.join(part.capitalize() for part in field_name.split('_')) + 'Entry'


class MessageBuilder:
    """Adds fields, oneofs and nested types to a DescriptorProto."""

    def __init__(self, file_builder: 'FileBuilder', desc, full_name: str):
        self.file_builder = file_builder
        self.desc = desc
        self.full_name = full_name

    @property
    def type_name(self) -> str:
        return '.' + self.full_name

    def field(
        self,
        name: str,
        type: str,
        type_name: Optional[str] = None,
        repeated: bool = False,
        constraints=None,
        oneof: Optional[int] = None,
        optional: bool = False,
        number: Optional[int] = None,
    ) -> 'MessageBuilder':
        f = self.desc.field.add()
        f.name = name
        f.number = number or len(self.desc.field)
        f.type = TYPES[type]
        f.label = _FDP.LABEL_REPEATED if repeated else _FDP.LABEL_OPTIONAL
        if type_name:
            f.type_name = type_name
        if constraints is not None:
            f.options.Extensions[proto.FIELD_EXTENSION].CopyFrom(constraints)
        if oneof is not None:
            f.oneof_index = oneof
        if optional:
            # proto3 "optional": synthetic oneof named after the field.
            f.proto3_optional = True
            synthetic = self.desc.oneof_decl.add()
            synthetic.name = '_' + name
            f.oneof_index = len(self.desc.oneof_decl) - 1
        return self

    def map_field(
        self,
        name: str,
        key_type: str,
        value_type: str,
        value_type_name: Optional[str] = None,
        constraints=None,
    ) -> 'MessageBuilder':
        entry = self.desc.nested_type.add()
        entry.name = _entry_name(name)
        entry.options.map_entry = True
        key = entry.field.add()
        key.name, key.number, key.label, key.type = 'key', 1, _FDP.LABEL_OPTIONAL, TYPES[key_type]
        value = entry.field.add()
        value.name, value.number, value.label, value.type = 'value', 2, _FDP.LABEL_OPTIONAL, TYPES[value_type]
        if value_type_name:
            value.type_name = value_type_name
        return self.field(name, 'message', type_name='.%s.%s' % (self.full_name, entry.name),
                          repeated=True, constraints=constraints)

    def oneof(self, name: str, required: bool = False) -> int:
        decl = self.desc.oneof_decl.add()
        decl.name = name
        if required:
            decl.options.Extensions[proto.ONEOF_EXTENSION].required = True
        return len(self.desc.oneof_decl) - 1

    def nested(self, name: str) -> 'MessageBuilder':
        desc = self.desc.nested_type.add()
        desc.name = name
        return MessageBuilder(self.file_builder, desc, self.full_name + '.' + name)

    def enum(self, name: str, values: Sequence) -> str:
        desc = self.desc.enum_type.add()
        desc.name = name
        for value_name, number in values:
            desc.value.add(name=value_name, number=number)
        return '.%s.%s' % (self.full_name, name)


class FileBuilder:
    """Builds one FileDescriptorProto."""

    def __init__(self, name: str, package: str = 'test', syntax: str = 'proto3',
                 dependencies: Iterable[str] = ()):
        self.fdesc = descriptor_pb2.FileDescriptorProto()
        self.fdesc.name = name
        self.fdesc.package = package
        if syntax != 'proto2':
            self.fdesc.syntax = syntax
        self.fdesc.dependency.extend(dependencies)

    def _full_name(self, name: str) -> str:
        return self.fdesc.package + '.' + name if self.fdesc.package else name

    def message(self, name: str) -> MessageBuilder:
        desc = self.fdesc.message_type.add()
        desc.name = name
        return MessageBuilder(self, desc, self._full_name(name))

    def enum(self, name: str, values: Sequence) -> str:
        desc = self.fdesc.enum_type.add()
        desc.name = name
        for value_name, number in values:
            desc.value.add(name=value_name, number=number)
        return '.' + self._full_name(name)

    def build(self) -> descriptor_pb2.FileDescriptorProto:
        return self.fdesc


def constraints(**kwargs):
    """Shorthand for proto.FieldConstraints(...)."""
    return proto.FieldConstraints(**kwargs)


def build_order_schema() -> descriptor_pb2.FileDescriptorProto:
    """
    The order.proto schema shared by the emitter and runtime tests.

    Equivalent to:

        enum Status { STATUS_UNKNOWN = 0; STATUS_OPEN = 1; STATUS_CLOSED = 2; }
        message Address {
          string city = 1 [required];
          string zip = 2 [pattern "^[0-9]{5}$"];
        }
        message Item {
          string sku = 1 [pattern "^[a-z]+$"];
          int32 quantity = 2 [range [1, 10]];
        }
        message Order {
          string id = 1 [required, length 3..20];
          Address address = 2 [required, nested];
          repeated Item items = 3 [count 1..3, nested];
          Status status = 4 [defined_enum];
          map<string, string> labels = 5 [pattern "^[a-z]+$"];
          optional double discount = 6 [range (0, 1)];
        }
    """
    fb = FileBuilder('order.proto')
    status = fb.enum('Status', [('STATUS_UNKNOWN', 0), ('STATUS_OPEN', 1), ('STATUS_CLOSED', 2)])

    address = fb.message('Address')
    address.field('city', 'string', constraints=constraints(required=True))
    address.field('zip', 'string', constraints=constraints(pattern=proto.Pattern(regex='^[0-9]{5}$')))

    item = fb.message('Item')
    item.field('sku', 'string', constraints=constraints(pattern=proto.Pattern(regex='^[a-z]+$')))
    item.field('quantity', 'int32', constraints=constraints(range=proto.Range(min=1, max=10)))

    order = fb.message('Order')
    order.field('id', 'string', constraints=constraints(required=True, length=proto.Length(min=3, max=20)))
    order.field('address', 'message', type_name=address.type_name,
                constraints=constraints(required=True, nested=True))
    order.field('items', 'message', type_name=item.type_name, repeated=True,
                constraints=constraints(count=proto.Count(min=1, max=3), nested=True))
    order.field('status', 'enum', type_name=status, constraints=constraints(defined_enum=True))
    order.map_field('labels', 'string', 'string',
                    constraints=constraints(pattern=proto.Pattern(regex='^[a-z]+$')))
    order.field('discount', 'double', optional=True,
                constraints=constraints(range=proto.Range(min=0, max=1, exclusive=True)))
    return fb.build()


def make_request(
    files: Sequence[descriptor_pb2.FileDescriptorProto],
    to_generate: Optional[Sequence[str]] = None,
    parameter: str = '',
) -> plugin_pb2.CodeGeneratorRequest:
    """Build a CodeGeneratorRequest; generates every file by default."""
    request = plugin_pb2.CodeGeneratorRequest()
    for fdesc in files:
        request.proto_file.add().CopyFrom(fdesc)
    if to_generate is None:
        to_generate = [f.name for f in files]
    request.file_to_generate.extend(to_generate)
    if parameter:
        request.parameter = parameter
    return request


def message_classes(files: Sequence[descriptor_pb2.FileDescriptorProto]):
    """
    Return a lookup of dynamic message classes for the given files.

    Files are added to a private descriptor pool in the given order, so
    dependencies must come first.
    """
    pool = descriptor_pool.DescriptorPool()
    for fdesc in files:
        pool.AddSerializedFile(fdesc.SerializeToString())

    def lookup(full_name: str):
        return message_factory.GetMessageClass(pool.FindMessageTypeByName(full_name))

    return lookup


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def repo_root() -> Path:
    """Return the repository root directory."""
    return REPO_ROOT


@pytest.fixture(scope="session")
def protos_dir() -> Path:
    """Return the directory holding the .proto test schemas."""
    return PROTOS_DIR


@pytest.fixture
def import_generated(tmp_path: Path, monkeypatch):
    """
    Write generated files below tmp_path and import them.

    Returns a function taking a sequence of objects with ``name`` and
    ``content`` (GeneratedArtifact or CodeGeneratorResponse.File) and
    returning a dict of imported modules keyed by module name. Imported
    modules are removed from sys.modules afterwards so tests reusing a
    file name do not see each other's code.
    """
    imported: List[str] = []
    monkeypatch.syspath_prepend(str(tmp_path))

    def _import(artifacts) -> Dict[str, object]:
        for artifact in artifacts:
            path = tmp_path / artifact.name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(artifact.content, encoding='utf-8')
        importlib.invalidate_caches()

        modules = {}
        for artifact in artifacts:
            name = artifact.name[:-len('.py')].replace('/', '.')
            parts = name.split('.')
            for i in range(1, len(parts) + 1):
                imported.append('.'.join(parts[:i]))
            modules[name] = importlib.import_module(name)
        return modules

    yield _import

    for name in imported:
        sys.modules.pop(name, None)


# =============================================================================
# protoc (grpcio-tools) Helpers
# =============================================================================

class ProtocCompiler:
    """Compiles .proto sources into a FileDescriptorSet with grpc_tools."""

    def __init__(self, protoc_module, include_dirs: Sequence[Path]):
        self.protoc = protoc_module
        self.include_dirs = list(include_dirs)

    def compile(self, source_dir: Path, names: Sequence[str], output: Path) -> descriptor_pb2.FileDescriptorSet:
        """
        Run protoc on names (relative to source_dir).

        Args:
            source_dir: Root directory of the .proto sources.
            names: Files to compile, relative to source_dir.
            output: Where protoc writes the descriptor set.

        Returns:
            The FileDescriptorSet, dependencies first.
        """
        args = ['protoc', '-I%s' % source_dir]
        args += ['-I%s' % d for d in self.include_dirs]
        args += ['--include_imports', '--descriptor_set_out=%s' % output]
        args += list(names)

        status = self.protoc.main(args)
        assert status == 0, 'protoc failed with status %d for %s' % (status, ' '.join(names))
        return descriptor_pb2.FileDescriptorSet.FromString(output.read_bytes())


@pytest.fixture(scope="session")
def protoc_compiler() -> ProtocCompiler:
    """Provide a protoc runner; skips when grpcio-tools is missing."""
    protoc = pytest.importorskip("grpc_tools.protoc")
    import grpc_tools
    wkt_dir = Path(os.path.dirname(grpc_tools.__file__)) / '_proto'
    return ProtocCompiler(protoc, [Path(proto.proto_include_dir()), wkt_dir])


# =============================================================================
# Pattern Matching Helpers
# =============================================================================

def match_patterns(content: str, pattern_file: Path) -> List[str]:
    """
    Check if content matches all patterns in a pattern file.

    Pattern file format:
        - Each line is a regex pattern
        - Lines starting with '! ' are inverted (pattern should NOT match)
        - Empty lines are ignored

    Args:
        content: The content to check
        pattern_file: Path to file containing patterns

    Returns:
        List of failed pattern descriptions (empty if all pass)
    """
    failures = []
    patterns = pattern_file.read_text(encoding='utf-8').splitlines()

    for pattern in patterns:
        pattern = pattern.strip()
        if not pattern:
            continue

        invert = False
        if pattern.startswith('! '):
            invert = True
            pattern = pattern[2:]

        match = re.search(pattern, content, re.MULTILINE)

        if not match and not invert:
            failures.append(f"Pattern not found: {pattern}")
        elif match and invert:
            failures.append(f"Pattern should not exist: {pattern}")

    return failures


# =============================================================================
# Pytest Markers
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that run protoc from grpcio-tools"
    )
    config.addinivalue_line(
        "markers", "generator: marks tests that inspect generated source"
    )
    config.addinivalue_line(
        "markers", "runtime: marks tests that execute generated validators"
    )
