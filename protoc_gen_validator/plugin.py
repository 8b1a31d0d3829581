#!/usr/bin/env python3
# kate: replace-tabs on; indent-width 4;

"""
protoc plugin harness.

protoc runs the plugin as a subprocess, writes a serialized
CodeGeneratorRequest to its stdin and reads a CodeGeneratorResponse from
its stdout. All of that framing lives in main_plugin(); generate() is a
pure function from request to response and the pipeline underneath it
(walk -> extract -> compile -> emit) never sees a byte stream.

Either every requested file is generated, or the response carries an error
and no files at all. protoc reports ``response.error`` as the generator's
failure, so a schema with bad constraints fails the build instead of
producing a partial set of validators.
"""

import sys
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, TextIO

from google.protobuf import descriptor_pb2
from google.protobuf.compiler import plugin_pb2

from . import proto  # noqa: F401  (registers the option extensions)
from .code_emitter import GeneratedArtifact, ValidatorEmitter, check_names
from .constraint_extractor import extract
from .descriptor_walker import DescriptorGraph, walk
from .diagnostics import DiagnosticsError, GenerationError
from .parameters import GeneratorOptions, parse_parameters
from .rule_compiler import RuleSet, compile_rules


def _log(options: GeneratorOptions, stream: TextIO, text: str) -> None:
    if options.verbose:
        stream.write('protoc-gen-validator: %s\n' % text)


def emit_files(graph: DescriptorGraph, rule_set: RuleSet,
               options: GeneratorOptions) -> List[GeneratedArtifact]:
    """
    Emit one artifact per requested file.

    With ``parallel`` > 1 the files are rendered in a thread pool. The graph
    and rule set are only read, and ``Executor.map`` yields results in
    submission order, so the output order is the request order either way.
    """
    def emit_one(schema_file):
        return ValidatorEmitter(schema_file, rule_set, graph, options).generate()

    if options.parallel > 1 and len(graph.files) > 1:
        with ThreadPoolExecutor(max_workers=options.parallel) as executor:
            results = list(executor.map(emit_one, graph.files))
    else:
        results = [emit_one(f) for f in graph.files]
    return [a for a in results if a is not None]


def run_pipeline(file_descriptors: Sequence[descriptor_pb2.FileDescriptorProto],
                 files_to_generate: Sequence[str],
                 options: Optional[GeneratorOptions] = None,
                 stream: Optional[TextIO] = None) -> List[GeneratedArtifact]:
    """
    Run walk, extract, compile and emit over a set of file descriptors.

    Raises:
        ResolutionError: A type reference is missing from file_descriptors.
        DiagnosticsError: One or more constraints are malformed or do not
                          apply to their field, or two generated functions
                          would share a name; carries all of them.
    """
    if options is None:
        options = GeneratorOptions()
    if stream is None:
        stream = sys.stderr

    graph = walk(file_descriptors, files_to_generate)
    _log(options, stream, 'resolved %d files, %d messages'
         % (len(graph.all_files), len(graph.messages)))

    extraction = extract(graph)
    if extraction.diagnostics:
        raise DiagnosticsError(extraction.diagnostics)

    rule_set = compile_rules(extraction, graph)
    _log(options, stream, 'compiled rules for %d messages' % len(rule_set.messages))

    collisions = check_names(graph, rule_set, options)
    if collisions:
        raise DiagnosticsError(collisions)

    artifacts = emit_files(graph, rule_set, options)
    for artifact in artifacts:
        _log(options, stream, 'generated %s' % artifact.name)
    return artifacts


def generate(request: plugin_pb2.CodeGeneratorRequest,
             stream: Optional[TextIO] = None) -> plugin_pb2.CodeGeneratorResponse:
    """Process one CodeGeneratorRequest into a CodeGeneratorResponse."""
    if stream is None:
        stream = sys.stderr
    options = parse_parameters(request.parameter, stream)

    response = plugin_pb2.CodeGeneratorResponse()
    response.supported_features = plugin_pb2.CodeGeneratorResponse.FEATURE_PROTO3_OPTIONAL

    try:
        artifacts = run_pipeline(request.proto_file, request.file_to_generate, options, stream)
    except GenerationError as e:
        response.error = str(e)
        return response

    for artifact in artifacts:
        f = response.file.add()
        f.name = artifact.name
        f.content = artifact.content
    return response


def main_plugin():
    '''Main function when invoked as a protoc plugin.'''
    data = sys.stdin.buffer.read()
    request = plugin_pb2.CodeGeneratorRequest.FromString(data)
    response = generate(request)
    sys.stdout.buffer.write(response.SerializeToString())
    sys.stdout.buffer.flush()
    return 0
