"""
Tests for the protoc plugin harness.

These tests verify that:
- A request is turned into one response file per requested schema
- Invalid schemas produce an error response and no files
- Parallel emission gives the same output as sequential emission
- main_plugin() speaks the stdin/stdout protocol
"""

import io
import sys

from google.protobuf.compiler import plugin_pb2

from protoc_gen_validator import proto
from protoc_gen_validator.plugin import generate, main_plugin

from conftest import FileBuilder, build_order_schema, constraints, make_request


def _many_files(count):
    files = []
    for i in range(count):
        fb = FileBuilder('part%d.proto' % i, package='parts')
        msg = fb.message('Part%d' % i)
        msg.field('name', 'string', constraints=constraints(
            required=True, pattern=proto.Pattern(regex='^p%d-[a-z]+$' % i)))
        msg.field('weight', 'double', constraints=constraints(range=proto.Range(min=0, max=i + 1)))
        files.append(fb.build())
    return files


class TestGenerate:
    """Tests for generate()."""

    def test_response_files(self):
        response = generate(make_request([build_order_schema()]), io.StringIO())

        assert not response.HasField('error')
        assert [f.name for f in response.file] == ['order_validator.py']
        assert 'def validate_Order(msg):' in response.file[0].content

    def test_declares_proto3_optional_support(self):
        response = generate(make_request([build_order_schema()]), io.StringIO())

        assert response.supported_features & plugin_pb2.CodeGeneratorResponse.FEATURE_PROTO3_OPTIONAL

    def test_diagnostics_become_error(self):
        fb = FileBuilder('order.proto')
        msg = fb.message('Order')
        msg.field('qty', 'int32', constraints=constraints(pattern=proto.Pattern(regex='^[a-z]+$')))
        msg.field('name', 'string', constraints=constraints(count=proto.Count(min=1)))
        good = FileBuilder('good.proto')
        good.message('Good').field('a', 'int32', constraints=constraints(range=proto.Range(min=0)))

        response = generate(make_request([good.build(), fb.build()]), io.StringIO())

        assert len(response.file) == 0
        assert response.error.splitlines() == [
            'order.proto: Order.qty: pattern constraint requires a string field, got int32',
            'order.proto: Order.name: count constraint requires a repeated or map field, got string',
        ]

    def test_name_collisions_become_error(self):
        fb = FileBuilder('outer.proto')
        outer = fb.message('Outer')
        outer.nested('Inner').field('n', 'int32', constraints=constraints(range=proto.Range(min=0)))
        fb.message('Outer_Inner').field('n', 'int32', constraints=constraints(range=proto.Range(max=0)))

        response = generate(make_request([fb.build()]), io.StringIO())

        assert len(response.file) == 0
        assert response.error.splitlines() == [
            'outer.proto: Outer_Inner: generated name validate_Outer_Inner is already used by Outer.Inner',
            'outer.proto: Outer_Inner.n: generated name _check_Outer_Inner_n is already used by Outer.Inner.n',
        ]

    def test_unresolved_type_becomes_error(self):
        fb = FileBuilder('broken.proto')
        fb.message('Broken').field('ghost', 'message', type_name='.test.Ghost')

        response = generate(make_request([fb.build()]), io.StringIO())

        assert len(response.file) == 0
        assert response.error == 'broken.proto: Broken.ghost: unknown type ".test.Ghost"'

    def test_missing_requested_file_becomes_error(self):
        fb = FileBuilder('a.proto')
        fb.message('A')

        response = generate(make_request([fb.build()], to_generate=['b.proto']), io.StringIO())

        assert len(response.file) == 0
        assert 'b.proto' in response.error

    def test_parameters_are_applied(self):
        stream = io.StringIO()

        response = generate(make_request([build_order_schema()], parameter='suffix=_rules,bogus'), stream)

        assert [f.name for f in response.file] == ['order_rules.py']
        assert 'ignoring unknown parameter "bogus"' in stream.getvalue()

    def test_verbose_logging(self):
        stream = io.StringIO()

        generate(make_request([build_order_schema()], parameter='verbose'), stream)

        lines = stream.getvalue().splitlines()
        assert lines[0].startswith('protoc-gen-validator: resolved 1 files, ')
        assert lines[-1] == 'protoc-gen-validator: generated order_validator.py'

    def test_quiet_by_default(self):
        stream = io.StringIO()

        generate(make_request([build_order_schema()]), stream)

        assert stream.getvalue() == ''

    def test_parallel_matches_sequential(self):
        files = _many_files(6)

        sequential = generate(make_request(files), io.StringIO())
        parallel = generate(make_request(files, parameter='parallel=4'), io.StringIO())

        assert [f.name for f in parallel.file] == ['part%d_validator.py' % i for i in range(6)]
        assert parallel.SerializeToString(deterministic=True) == sequential.SerializeToString(deterministic=True)

    def test_repeated_runs_are_identical(self):
        request = make_request([build_order_schema()])

        first = generate(request, io.StringIO())
        second = generate(request, io.StringIO())

        assert first.SerializeToString(deterministic=True) == second.SerializeToString(deterministic=True)


class _BinaryStream:
    """Stands in for sys.stdin / sys.stdout with a .buffer attribute."""

    def __init__(self, data=b''):
        self.buffer = io.BytesIO(data)


class TestMainPlugin:
    """Tests for main_plugin()."""

    def test_round_trip_through_stdio(self, monkeypatch):
        request = make_request([build_order_schema()])
        stdout = _BinaryStream()
        monkeypatch.setattr(sys, 'stdin', _BinaryStream(request.SerializeToString()))
        monkeypatch.setattr(sys, 'stdout', stdout)

        assert main_plugin() == 0

        response = plugin_pb2.CodeGeneratorResponse.FromString(stdout.buffer.getvalue())
        assert [f.name for f in response.file] == ['order_validator.py']

    def test_error_response_exits_zero(self, monkeypatch):
        fb = FileBuilder('bad.proto')
        fb.message('Bad').field('n', 'int32', constraints=constraints(nested=True))
        stdout = _BinaryStream()
        monkeypatch.setattr(sys, 'stdin', _BinaryStream(make_request([fb.build()]).SerializeToString()))
        monkeypatch.setattr(sys, 'stdout', stdout)

        assert main_plugin() == 0

        response = plugin_pb2.CodeGeneratorResponse.FromString(stdout.buffer.getvalue())
        assert response.error == 'bad.proto: Bad.n: nested constraint requires a message field, got int32'
