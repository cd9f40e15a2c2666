"""Encoded program: the portable form of one object graph.

An EncodedProgram is a flat, JSON-compatible instruction sequence:

- ``nodes``: one construction instruction per composite value, in index
  order. Index 0 is the root whenever the root is composite.
- ``links``: deferred edges between nodes, applied after every node exists.
- ``root``: operand for the whole value (``["ref", 0]`` or a literal).

Operands are plain JSON scalars, or tagged lists such as ``["ref", 3]`` or
``["datetime", "2024-01-01T00:00:00"]``. A JSON list in operand position is
always a tag; lists in the graph are nodes.

Example:
    >>> program = EncodedProgram(
    ...     nodes=[["object", {"a": 1, "b": None}], ["array", ["x"]]],
    ...     links=[Link(LinkKind.OBJECT, 0, "b", ref(1))],
    ...     root=ref(0),
    ... )
    >>> EncodedProgram.from_dict(program.to_dict()) == program
    True
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from taskpipe.core.errors import DecodeError

PROGRAM_VERSION = 1

# Operand tags
TAG_REF = "ref"
TAG_ABSENT = "absent"
TAG_FLOAT = "float"
TAG_COMPLEX = "complex"
TAG_BYTES = "bytes"
TAG_DATETIME = "datetime"
TAG_DATE = "date"
TAG_TIME = "time"
TAG_TIMEDELTA = "timedelta"
TAG_REGEX = "regex"
TAG_TUPLE = "tuple"
TAG_FROZENSET = "frozenset"
TAG_NDARRAY = "ndarray"
TAG_TASK = "task"
TAG_BEHAVIOR = "behavior"

# Node instructions
NODE_ARRAY = "array"
NODE_OBJECT = "object"
NODE_MAP = "map"
NODE_SET = "set"
NODE_INSTANCE = "instance"

NODE_KINDS = (NODE_ARRAY, NODE_OBJECT, NODE_MAP, NODE_SET, NODE_INSTANCE)

ABSENT = [TAG_ABSENT]


def ref(index: int) -> List[Any]:
    """Operand referring to node ``index``."""
    return [TAG_REF, index]


def is_ref(operand: Any) -> bool:
    return (
        isinstance(operand, list)
        and len(operand) == 2
        and operand[0] == TAG_REF
    )


def is_absent(operand: Any) -> bool:
    return isinstance(operand, list) and operand == ABSENT


class LinkKind(str, Enum):
    """Container kind of a deferred edge.

    Declaration order is the order in which the decoder applies links.
    """
    DELEGATE = "delegate"
    ARRAY = "array"
    OBJECT = "object"
    MAP = "map"
    SET = "set"


@dataclass(frozen=True)
class Link:
    """Deferred edge from node ``source`` to ``target``.

    Attributes:
        kind: Container kind of the source node.
        source: Index of the node being patched.
        key: List position (ARRAY), attribute name (OBJECT), key operand
            (MAP), or None (SET, DELEGATE).
        target: ``ref`` operand for ARRAY/OBJECT/SET, any operand for MAP,
            behavior literal for DELEGATE.
    """

    kind: LinkKind
    source: int
    key: Any
    target: Any

    def to_list(self) -> List[Any]:
        return [self.kind.value, self.source, self.key, self.target]

    @classmethod
    def from_list(cls, data: Any) -> "Link":
        if not isinstance(data, list) or len(data) != 4:
            raise DecodeError(f"Malformed link: {data!r}")
        kind, source, key, target = data
        try:
            link_kind = LinkKind(kind)
        except ValueError:
            raise DecodeError(f"Unknown link kind: {kind!r}") from None
        if not isinstance(source, int) or isinstance(source, bool):
            raise DecodeError(f"Link source must be a node index: {source!r}")
        return cls(kind=link_kind, source=source, key=key, target=target)


@dataclass
class EncodedProgram:
    """Node construction list + link list + root operand."""

    nodes: List[List[Any]] = field(default_factory=list)
    links: List[Link] = field(default_factory=list)
    root: Any = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-compatible representation."""
        return {
            "version": PROGRAM_VERSION,
            "nodes": self.nodes,
            "links": [link.to_list() for link in self.links],
            "root": self.root,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "EncodedProgram":
        """Rebuild a program from :meth:`to_dict` output.

        Only the envelope is validated here; instructions are validated
        while they are replayed.

        Raises:
            DecodeError: If the structure is not a program.
        """
        if not isinstance(data, dict):
            raise DecodeError(f"Encoded program must be a dict, got {type(data).__name__}")

        version = data.get("version")
        if version != PROGRAM_VERSION:
            raise DecodeError(
                f"Unsupported program version: {version!r} (expected {PROGRAM_VERSION})"
            )

        nodes = data.get("nodes")
        links = data.get("links")
        if not isinstance(nodes, list) or not isinstance(links, list):
            raise DecodeError("Encoded program requires 'nodes' and 'links' lists")
        if "root" not in data:
            raise DecodeError("Encoded program has no root")

        return cls(
            nodes=nodes,
            links=[Link.from_list(item) for item in links],
            root=data["root"],
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), allow_nan=False)

    @classmethod
    def from_json(cls, text: str) -> "EncodedProgram":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise DecodeError(f"Encoded program is not valid JSON: {e}") from e
        return cls.from_dict(data)


__all__ = [
    "PROGRAM_VERSION",
    "ABSENT",
    "LinkKind",
    "Link",
    "EncodedProgram",
    "ref",
    "is_ref",
    "is_absent",
]
