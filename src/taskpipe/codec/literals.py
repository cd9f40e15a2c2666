"""Inline literal operands.

Literals are values that carry no identity worth preserving: scalars,
timestamps, patterns, bytes, numpy arrays (copied by value), and tuples or
frozensets made only of literals. They are written directly into node
instructions instead of getting a node index.

References to registered tasks and behavior classes are literals too: they
are resolved by name on the far side.
"""

import base64
import datetime
import math
import re
from typing import Any, List

import numpy as np

from taskpipe.codec import program as p
from taskpipe.core.errors import DecodeError, UnknownTaskError
from taskpipe.core.registry import behavior_ref, get_behavior, get_task, task_spec_for


class _NotLiteral:
    def __repr__(self) -> str:
        return "NOT_LITERAL"


NOT_LITERAL = _NotLiteral()

# Deeper tuple/frozenset nesting is encoded as array/set nodes instead.
MAX_LITERAL_DEPTH = 32


def encode_literal(value: Any, _depth: int = 0) -> Any:
    """Encode ``value`` as an inline operand.

    Tuples and frozensets nested more than ``MAX_LITERAL_DEPTH`` levels
    deep are not literals, so the call stack stays bounded.

    Returns:
        The operand, or ``NOT_LITERAL`` if the value needs a node (or is
        not representable at all).
    """
    if value is None or isinstance(value, (bool, str)):
        return value

    if isinstance(value, int):
        return value

    if isinstance(value, float):
        if math.isnan(value):
            return [p.TAG_FLOAT, "nan"]
        if math.isinf(value):
            return [p.TAG_FLOAT, "inf" if value > 0 else "-inf"]
        return value

    if isinstance(value, complex):
        return [p.TAG_COMPLEX, encode_literal(value.real), encode_literal(value.imag)]

    if isinstance(value, (bytes, bytearray)):
        return [p.TAG_BYTES, base64.b64encode(bytes(value)).decode("ascii")]

    # datetime is a subclass of date
    if isinstance(value, datetime.datetime):
        return [p.TAG_DATETIME, value.isoformat()]
    if isinstance(value, datetime.date):
        return [p.TAG_DATE, value.isoformat()]
    if isinstance(value, datetime.time):
        return [p.TAG_TIME, value.isoformat()]
    if isinstance(value, datetime.timedelta):
        return [p.TAG_TIMEDELTA, value.days, value.seconds, value.microseconds]

    if isinstance(value, re.Pattern):
        if not isinstance(value.pattern, str):
            return NOT_LITERAL
        return [p.TAG_REGEX, value.pattern, value.flags]

    # Handle numpy arrays
    if isinstance(value, np.ndarray):
        if value.dtype.hasobject:
            return NOT_LITERAL
        return [
            p.TAG_NDARRAY,
            value.dtype.str,
            list(value.shape),
            base64.b64encode(np.ascontiguousarray(value).tobytes()).decode("ascii"),
        ]

    # Handle numpy scalars (e.g. np.float32)
    if isinstance(value, np.generic):
        return encode_literal(value.item())

    if isinstance(value, (tuple, frozenset)):
        if _depth >= MAX_LITERAL_DEPTH:
            return NOT_LITERAL
        items = []
        for item in value:
            operand = encode_literal(item, _depth + 1)
            if operand is NOT_LITERAL:
                return NOT_LITERAL
            items.append(operand)
        tag = p.TAG_TUPLE if isinstance(value, tuple) else p.TAG_FROZENSET
        return [tag, items]

    if isinstance(value, type):
        found = behavior_ref(value)
        if found is not None:
            return [p.TAG_BEHAVIOR, found[0], found[1]]
        return NOT_LITERAL

    if callable(value):
        spec = task_spec_for(value)
        if spec is not None:
            return [p.TAG_TASK, spec.name, spec.module]
        return NOT_LITERAL

    return NOT_LITERAL


def _expect(operand: List[Any], length: int) -> None:
    if len(operand) != length:
        raise DecodeError(f"Malformed '{operand[0]}' operand: {operand!r}")


def decode_literal(operand: Any, _depth: int = 0) -> Any:
    """Decode an inline operand produced by :func:`encode_literal`.

    ``ref`` and ``absent`` operands are not literals; the decoder resolves
    them before calling this.

    Raises:
        DecodeError: If the operand is malformed or names an unknown
            task or behavior.
    """
    if operand is None or isinstance(operand, (bool, int, float, str)):
        return operand

    if not isinstance(operand, list) or not operand or not isinstance(operand[0], str):
        raise DecodeError(f"Malformed operand: {operand!r}")

    tag = operand[0]
    # Complex parts sit one level below the deepest tuple member.
    if _depth > MAX_LITERAL_DEPTH + 1:
        raise DecodeError(f"Literal nested deeper than {MAX_LITERAL_DEPTH} levels")
    try:
        if tag == p.TAG_FLOAT:
            _expect(operand, 2)
            return float(operand[1])
        if tag == p.TAG_COMPLEX:
            _expect(operand, 3)
            return complex(
                decode_literal(operand[1], _depth + 1),
                decode_literal(operand[2], _depth + 1),
            )
        if tag == p.TAG_BYTES:
            _expect(operand, 2)
            return base64.b64decode(operand[1])
        if tag == p.TAG_DATETIME:
            _expect(operand, 2)
            return datetime.datetime.fromisoformat(operand[1])
        if tag == p.TAG_DATE:
            _expect(operand, 2)
            return datetime.date.fromisoformat(operand[1])
        if tag == p.TAG_TIME:
            _expect(operand, 2)
            return datetime.time.fromisoformat(operand[1])
        if tag == p.TAG_TIMEDELTA:
            _expect(operand, 4)
            return datetime.timedelta(
                days=operand[1], seconds=operand[2], microseconds=operand[3]
            )
        if tag == p.TAG_REGEX:
            _expect(operand, 3)
            return re.compile(operand[1], operand[2])
        if tag == p.TAG_NDARRAY:
            _expect(operand, 4)
            dtype = np.dtype(operand[1])
            shape = tuple(operand[2])
            buf = base64.b64decode(operand[3])
            return np.frombuffer(buf, dtype=dtype).reshape(shape).copy()
        if tag == p.TAG_TUPLE:
            _expect(operand, 2)
            return tuple(decode_literal(item, _depth + 1) for item in operand[1])
        if tag == p.TAG_FROZENSET:
            _expect(operand, 2)
            return frozenset(decode_literal(item, _depth + 1) for item in operand[1])
        if tag == p.TAG_TASK:
            _expect(operand, 3)
            return get_task(operand[1], operand[2]).func
        if tag == p.TAG_BEHAVIOR:
            _expect(operand, 3)
            return get_behavior(operand[1], operand[2])
    except DecodeError:
        raise
    except (UnknownTaskError, ImportError) as e:
        raise DecodeError(f"Cannot resolve {tag} reference: {e}") from e
    except (TypeError, ValueError, re.error) as e:
        raise DecodeError(f"Malformed '{tag}' operand: {e}") from e

    raise DecodeError(f"Unknown operand tag: {tag!r}")


__all__ = ["NOT_LITERAL", "MAX_LITERAL_DEPTH", "encode_literal", "decode_literal"]
