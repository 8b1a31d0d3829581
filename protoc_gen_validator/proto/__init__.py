'''This file registers the protovalidator option definitions for Python.'''

import os.path

from google.protobuf import descriptor_pb2
from google.protobuf import descriptor_pool
from google.protobuf import message_factory

VALIDATOR_PROTO = 'protovalidator/validator.proto'
PACKAGE = 'protovalidator'

FIELD_EXTENSION_NUMBER = 65020
ONEOF_EXTENSION_NUMBER = 65021

_FDP = descriptor_pb2.FieldDescriptorProto

# (name, type, message type name) per field, numbered from 1 in this order.
# Must stay in sync with protovalidator/validator.proto next to this file.
_MESSAGES = [
    ('FieldConstraints', [
        ('range', _FDP.TYPE_MESSAGE, 'Range'),
        ('length', _FDP.TYPE_MESSAGE, 'Length'),
        ('pattern', _FDP.TYPE_MESSAGE, 'Pattern'),
        ('required', _FDP.TYPE_BOOL, None),
        ('nested', _FDP.TYPE_BOOL, None),
        ('count', _FDP.TYPE_MESSAGE, 'Count'),
        ('defined_enum', _FDP.TYPE_BOOL, None),
        ('human_error', _FDP.TYPE_STRING, None),
    ]),
    ('Range', [
        ('min', _FDP.TYPE_DOUBLE, None),
        ('max', _FDP.TYPE_DOUBLE, None),
        ('exclusive', _FDP.TYPE_BOOL, None),
    ]),
    ('Length', [
        ('min', _FDP.TYPE_UINT64, None),
        ('max', _FDP.TYPE_UINT64, None),
    ]),
    ('Pattern', [
        ('regex', _FDP.TYPE_STRING, None),
        ('substring', _FDP.TYPE_BOOL, None),
    ]),
    ('Count', [
        ('min', _FDP.TYPE_UINT64, None),
        ('max', _FDP.TYPE_UINT64, None),
    ]),
    ('OneofConstraints', [
        ('required', _FDP.TYPE_BOOL, None),
    ]),
]


def proto_include_dir():
    '''Directory to pass to protoc with -I so schemas can import the options.'''
    return os.path.dirname(os.path.abspath(__file__))


def build_validator_file_proto():
    '''Build the FileDescriptorProto equivalent of validator.proto.'''
    fdesc = descriptor_pb2.FileDescriptorProto()
    fdesc.name = VALIDATOR_PROTO
    fdesc.package = PACKAGE
    fdesc.syntax = 'proto2'
    fdesc.dependency.append('google/protobuf/descriptor.proto')

    for msg_name, fields in _MESSAGES:
        msg = fdesc.message_type.add()
        msg.name = msg_name
        for number, (field_name, field_type, type_name) in enumerate(fields, 1):
            f = msg.field.add()
            f.name = field_name
            f.number = number
            f.label = _FDP.LABEL_OPTIONAL
            f.type = field_type
            if type_name:
                f.type_name = '.%s.%s' % (PACKAGE, type_name)

    for ext_name, number, extendee, type_name in (
            ('field', FIELD_EXTENSION_NUMBER, 'FieldOptions', 'FieldConstraints'),
            ('oneof', ONEOF_EXTENSION_NUMBER, 'OneofOptions', 'OneofConstraints')):
        ext = fdesc.extension.add()
        ext.name = ext_name
        ext.number = number
        ext.label = _FDP.LABEL_OPTIONAL
        ext.type = _FDP.TYPE_MESSAGE
        ext.type_name = '.%s.%s' % (PACKAGE, type_name)
        ext.extendee = '.google.protobuf.%s' % extendee

    return fdesc


def load_validator_options(pool=None):
    '''Register validator.proto in the descriptor pool and return its classes.

    The default pool is used so that FieldOptions parsed from a
    CodeGeneratorRequest carry the decoded extensions. If the file was
    already registered (e.g. a protoc-built validator_pb2 was imported
    first) the existing definition is reused.
    '''
    if pool is None:
        pool = descriptor_pool.Default()

    try:
        pool.FindFileByName(VALIDATOR_PROTO)
    except KeyError:
        pool.AddSerializedFile(build_validator_file_proto().SerializeToString())

    classes = message_factory.GetMessageClassesForFiles([VALIDATOR_PROTO], pool)
    field_ext = pool.FindExtensionByName(PACKAGE + '.field')
    oneof_ext = pool.FindExtensionByName(PACKAGE + '.oneof')
    return classes, field_ext, oneof_ext


_classes, FIELD_EXTENSION, ONEOF_EXTENSION = load_validator_options()

FieldConstraints = _classes[PACKAGE + '.FieldConstraints']
Range = _classes[PACKAGE + '.Range']
Length = _classes[PACKAGE + '.Length']
Pattern = _classes[PACKAGE + '.Pattern']
Count = _classes[PACKAGE + '.Count']
OneofConstraints = _classes[PACKAGE + '.OneofConstraints']


def field_constraints(field_options):
    '''Return the FieldConstraints attached to a FieldOptions, or None.'''
    if field_options is None or not field_options.HasExtension(FIELD_EXTENSION):
        return None
    return field_options.Extensions[FIELD_EXTENSION]


def oneof_constraints(oneof_options):
    '''Return the OneofConstraints attached to a OneofOptions, or None.'''
    if oneof_options is None or not oneof_options.HasExtension(ONEOF_EXTENSION):
        return None
    return oneof_options.Extensions[ONEOF_EXTENSION]
