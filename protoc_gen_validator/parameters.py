"""
Plugin parameter parsing.

protoc passes everything after ``--validator_out=`` and before the colon (or
the value of ``--validator_opt``) as a single comma separated string of
``key[=value]`` tokens, e.g.::

    protoc --validator_out=skip_unconstrained,parallel=4:out/ foo.proto

Unknown keys and malformed values are reported on stderr and otherwise
ignored; they never abort a run.
"""

import sys
from dataclasses import dataclass, fields
from typing import Optional, TextIO

_TRUE = ('', '1', 'true', 'yes', 'on')
_FALSE = ('0', 'false', 'no', 'off')


@dataclass
class GeneratorOptions:
    """
    Generator switches.

    Attributes:
        suffix: Appended to the proto file stem to name the output module.
        runtime: Dotted import path of the runtime support module.
        skip_unconstrained: Omit validators of messages without rules that
                            no nested rule delegates to.
        docstrings: Emit a docstring listing constraints per validator.
        parallel: Number of worker threads used to emit files.
        verbose: Print progress to stderr.
    """
    suffix: str = '_validator'
    runtime: str = 'protoc_gen_validator.runtime'
    skip_unconstrained: bool = False
    docstrings: bool = True
    parallel: int = 1
    verbose: bool = False


def _warn(stream: TextIO, text: str) -> None:
    stream.write('protoc-gen-validator: warning: %s\n' % text)


def parse_parameters(parameter: Optional[str], stream: Optional[TextIO] = None) -> GeneratorOptions:
    """
    Parse a protoc plugin parameter string.

    Args:
        parameter: The raw ``CodeGeneratorRequest.parameter`` value.
        stream: Where warnings go (defaults to sys.stderr).

    Returns:
        GeneratorOptions with every recognised key applied.
    """
    if stream is None:
        stream = sys.stderr
    options = GeneratorOptions()
    known = {f.name: f for f in fields(GeneratorOptions)}

    for token in (parameter or '').split(','):
        token = token.strip()
        if not token:
            continue
        key, _, value = token.partition('=')
        key = key.strip()
        value = value.strip()

        if key not in known:
            _warn(stream, 'ignoring unknown parameter "%s"' % key)
            continue

        current = getattr(options, key)
        if isinstance(current, bool):
            lowered = value.lower()
            if lowered in _TRUE:
                setattr(options, key, True)
            elif lowered in _FALSE:
                setattr(options, key, False)
            else:
                _warn(stream, 'invalid boolean "%s" for parameter "%s"' % (value, key))
        elif isinstance(current, int):
            try:
                number = int(value)
            except ValueError:
                _warn(stream, 'invalid integer "%s" for parameter "%s"' % (value, key))
                continue
            if number < 1:
                _warn(stream, 'parameter "%s" must be at least 1, got %d' % (key, number))
                continue
            setattr(options, key, number)
        else:
            if not value:
                _warn(stream, 'parameter "%s" needs a value' % key)
                continue
            setattr(options, key, value)

    return options
