"""GraphDecoder: EncodedProgram -> object graph.

Replay happens in two passes:

1. Construct every node in index order from its instruction. Composite
   children are still placeholders at this point.
2. Apply the links. A link may target a node with a higher index than its
   source, so this cannot be folded into the first pass.

Links are applied grouped by kind (delegate, array, object, map, set), in
recorded order within each kind. Instances get their class and attributes
before anything hashes them as a map key or set member.

The decoder trusts programs produced by :class:`~taskpipe.codec.GraphEncoder`
but reports malformed input as :class:`~taskpipe.core.errors.DecodeError`.
"""

import logging
from typing import Any, Dict, List, Union

from taskpipe.codec import program as p
from taskpipe.codec.literals import decode_literal
from taskpipe.codec.program import EncodedProgram, Link, LinkKind
from taskpipe.core.errors import DecodeError
from taskpipe.core.registry import BehaviorShell

logger = logging.getLogger(__name__)

ProgramLike = Union[EncodedProgram, Dict[str, Any]]


class GraphDecoder:
    """Rebuilds one value per :meth:`decode` call."""

    def decode(self, program: ProgramLike) -> Any:
        """Replay ``program`` (an EncodedProgram or its dict form).

        Raises:
            DecodeError: If the program is malformed.
        """
        if not isinstance(program, EncodedProgram):
            program = EncodedProgram.from_dict(program)
        return _DecodeOperation(program).run()


class _DecodeOperation:

    def __init__(self, program: EncodedProgram):
        self.program = program
        self.table: List[Any] = []

    def run(self) -> Any:
        for index, instruction in enumerate(self.program.nodes):
            self.table.append(self._construct(index, instruction))

        for kind in LinkKind:
            for link in self.program.links:
                if link.kind is kind:
                    self._apply(link)

        logger.debug(
            f"Decoded program: {len(self.table)} node(s), {len(self.program.links)} link(s)"
        )
        return self.operand(self.program.root)

    # ------------------------------------------------------------------
    # Operands
    # ------------------------------------------------------------------

    def operand(self, operand: Any) -> Any:
        if p.is_ref(operand):
            return self.node(operand[1])
        if p.is_absent(operand):
            return None
        return decode_literal(operand)

    def node(self, index: Any) -> Any:
        if not isinstance(index, int) or isinstance(index, bool):
            raise DecodeError(f"Node reference must be an integer: {index!r}")
        if not 0 <= index < len(self.table):
            raise DecodeError(
                f"Reference to node {index} outside program of {len(self.table)} node(s)"
            )
        return self.table[index]

    def _placeholder(self, operand: Any) -> Any:
        # Composite children are placeholders until links are applied.
        if p.is_ref(operand):
            return None
        return self.operand(operand)

    # ------------------------------------------------------------------
    # Pass 1: construction
    # ------------------------------------------------------------------

    def _construct(self, index: int, instruction: Any) -> Any:
        if not isinstance(instruction, list) or len(instruction) != 2:
            raise DecodeError(f"Malformed instruction for node {index}: {instruction!r}")

        kind, body = instruction

        if kind == p.NODE_ARRAY:
            self._expect(index, kind, body, list)
            return [self._placeholder(item) for item in body]

        if kind == p.NODE_OBJECT:
            self._expect(index, kind, body, dict)
            return {key: self._placeholder(item) for key, item in body.items()}

        if kind == p.NODE_MAP:
            self._expect(index, kind, body, list)
            result = {}
            for entry in body:
                if not isinstance(entry, list) or len(entry) != 2:
                    raise DecodeError(f"Malformed map entry in node {index}: {entry!r}")
                result[self._hashable(self.operand(entry[0]))] = self._placeholder(entry[1])
            return result

        if kind == p.NODE_SET:
            self._expect(index, kind, body, list)
            return {self._hashable(self.operand(item)) for item in body}

        if kind == p.NODE_INSTANCE:
            self._expect(index, kind, body, dict)
            shell = BehaviorShell()
            shell.__dict__.update(
                {key: self._placeholder(item) for key, item in body.items()}
            )
            return shell

        raise DecodeError(f"Unknown instruction kind for node {index}: {kind!r}")

    @staticmethod
    def _expect(index: int, kind: str, body: Any, body_type: type) -> None:
        if not isinstance(body, body_type):
            raise DecodeError(
                f"Node {index} ({kind}) expects a {body_type.__name__} body, "
                f"got {type(body).__name__}"
            )

    @staticmethod
    def _hashable(value: Any) -> Any:
        try:
            hash(value)
        except TypeError:
            raise DecodeError(
                f"Map key or set member of type {type(value).__name__} is unhashable"
            ) from None
        return value

    # ------------------------------------------------------------------
    # Pass 2: links
    # ------------------------------------------------------------------

    def _apply(self, link: Link) -> None:
        source = self.node(link.source)

        if link.kind is LinkKind.DELEGATE:
            cls = decode_literal(link.target)
            if not isinstance(cls, type):
                raise DecodeError(f"Delegate of node {link.source} is not a class")
            try:
                source.__class__ = cls
            except TypeError as e:
                raise DecodeError(
                    f"Cannot attach behavior {cls.__qualname__} to node {link.source}: {e}"
                ) from e
            return

        target = self.operand(link.target)

        if link.kind is LinkKind.ARRAY:
            if not isinstance(source, list):
                raise DecodeError(f"Array link on non-array node {link.source}")
            try:
                source[link.key] = target
            except (IndexError, TypeError) as e:
                raise DecodeError(f"Bad array link position {link.key!r}: {e}") from e

        elif link.kind is LinkKind.OBJECT:
            if not isinstance(link.key, str):
                raise DecodeError(f"Object link key must be a string: {link.key!r}")
            if isinstance(source, dict):
                source[link.key] = target
            elif hasattr(source, "__dict__"):
                source.__dict__[link.key] = target
            else:
                raise DecodeError(f"Object link on non-object node {link.source}")

        elif link.kind is LinkKind.MAP:
            if not isinstance(source, dict):
                raise DecodeError(f"Map link on non-map node {link.source}")
            source[self._hashable(self.operand(link.key))] = target

        elif link.kind is LinkKind.SET:
            if not isinstance(source, set):
                raise DecodeError(f"Set link on non-set node {link.source}")
            source.add(self._hashable(target))


def decode(program: ProgramLike) -> Any:
    """Decode ``program`` with a fresh :class:`GraphDecoder`."""
    return GraphDecoder().decode(program)


__all__ = ["GraphDecoder", "decode"]
