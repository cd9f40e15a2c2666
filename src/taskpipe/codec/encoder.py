"""GraphEncoder: object graph -> EncodedProgram.

Every composite value (list, dict, set, instance of a registered behavior
class) becomes a node with an index assigned on first visit. A composite
child is never written inline: its slot holds a placeholder and a Link to
the child's index is recorded. Revisiting an object resolves to the index it
already has, which is what lets shared sub-objects and cycles encode.

Construction of each node is deferred onto a worklist and drained in
breadth-wise passes, so the call stack does not grow with graph depth.

Values that cannot be represented (sockets, locks, unregistered classes and
callables, ...) become the ``absent`` marker. Encoding never fails.

Example:
    >>> from taskpipe.codec import encode, decode
    >>>
    >>> graph = {"name": "root", "children": []}
    >>> graph["children"].append(graph)
    >>> program = encode(graph)
    >>> clone = decode(program)
    >>> clone["children"][0] is clone
    True
"""

import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List

from taskpipe.codec import program as p
from taskpipe.codec.literals import NOT_LITERAL, encode_literal
from taskpipe.codec.program import ABSENT, EncodedProgram, Link, LinkKind, ref
from taskpipe.core.registry import behavior_ref

logger = logging.getLogger(__name__)


class GraphEncoder:
    """Encodes one value per :meth:`encode` call.

    All traversal state (identity map, nodes, links, worklist) is created
    fresh for each call.
    """

    def encode(self, value: Any) -> EncodedProgram:
        """Encode ``value`` into a self-contained program."""
        return _EncodeOperation().run(value)


class _EncodeOperation:
    """Traversal state for a single encode call."""

    def __init__(self):
        # id(obj) -> node index. ``_keepalive`` pins visited objects so
        # their ids cannot be reused while the operation runs.
        self.visits: Dict[int, int] = {}
        self._keepalive: List[Any] = []
        self.nodes: List[Any] = []
        self.links: List[Link] = []
        self.tails: Deque[Callable[[], None]] = deque()
        self.gaps = 0

    def run(self, value: Any) -> EncodedProgram:
        root = self.visit(value)

        # Drain the worklist level by level instead of recursing.
        while self.tails:
            for _ in range(len(self.tails)):
                self.tails.popleft()()

        if self.gaps:
            logger.debug(f"Encoded graph with {self.gaps} unrepresentable value(s)")

        return EncodedProgram(nodes=self.nodes, links=self.links, root=root)

    # ------------------------------------------------------------------
    # Visiting
    # ------------------------------------------------------------------

    def visit(self, value: Any) -> Any:
        """Return the operand for ``value``, allocating a node if needed."""
        operand = encode_literal(value)
        if operand is not NOT_LITERAL:
            return operand

        index = self.visits.get(id(value))
        if index is not None:
            return ref(index)

        build = self._builder_for(value)
        if build is None:
            self.gaps += 1
            logger.debug(f"Cannot encode value of type {type(value).__name__}, marking absent")
            return ABSENT

        index = len(self.nodes)
        self.visits[id(value)] = index
        self._keepalive.append(value)
        self.nodes.append(None)
        self.tails.append(lambda: build(index, value))
        return ref(index)

    def visit_hashable(self, value: Any) -> Any:
        """Visit a map key or set member.

        The operand must decode to something hashable; a tuple that had to
        become a list node would not be, so it is marked absent instead.
        """
        operand = self.visit(value)
        if p.is_ref(operand) and not _is_instance(self._keepalive[operand[1]]):
            self.gaps += 1
            logger.debug(f"Unhashable key or member of type {type(value).__name__}, marking absent")
            return ABSENT
        return operand

    def _builder_for(self, value: Any):
        if isinstance(value, (list, tuple)):
            return self._build_array
        if isinstance(value, dict):
            if all(isinstance(k, str) for k in value):
                return self._build_object
            return self._build_map
        if isinstance(value, (set, frozenset)):
            return self._build_set
        if _is_instance(value):
            return self._build_instance
        return None

    # ------------------------------------------------------------------
    # Node construction rules
    # ------------------------------------------------------------------

    def _build_array(self, index: int, value: Any) -> None:
        items = []
        for position, item in enumerate(value):
            operand = self.visit(item)
            if p.is_ref(operand):
                self.links.append(Link(LinkKind.ARRAY, index, position, operand))
                operand = None
            elif p.is_absent(operand):
                operand = None
            items.append(operand)
        self.nodes[index] = [p.NODE_ARRAY, items]

    def _build_props(self, index: int, props: Dict[str, Any]) -> Dict[str, Any]:
        encoded = {}
        for key, item in props.items():
            operand = self.visit(item)
            if p.is_absent(operand):
                continue
            if p.is_ref(operand):
                self.links.append(Link(LinkKind.OBJECT, index, key, operand))
                operand = None
            encoded[key] = operand
        return encoded

    def _build_object(self, index: int, value: Dict[str, Any]) -> None:
        self.nodes[index] = [p.NODE_OBJECT, self._build_props(index, value)]

    def _build_map(self, index: int, value: Dict[Any, Any]) -> None:
        entries = []
        for key, item in value.items():
            key_operand = self.visit_hashable(key)
            if p.is_absent(key_operand):
                continue
            operand = self.visit(item)
            if p.is_absent(operand):
                operand = None
            if p.is_ref(key_operand) or p.is_ref(operand):
                self.links.append(Link(LinkKind.MAP, index, key_operand, operand))
                if p.is_ref(key_operand):
                    continue
                operand = None
            entries.append([key_operand, operand])
        self.nodes[index] = [p.NODE_MAP, entries]

    def _build_set(self, index: int, value: Any) -> None:
        members = []
        for item in value:
            operand = self.visit_hashable(item)
            if p.is_absent(operand):
                continue
            if p.is_ref(operand):
                self.links.append(Link(LinkKind.SET, index, None, operand))
                continue
            members.append(operand)
        self.nodes[index] = [p.NODE_SET, members]

    def _build_instance(self, index: int, value: Any) -> None:
        name, module = behavior_ref(type(value))
        self.nodes[index] = [p.NODE_INSTANCE, self._build_props(index, vars(value))]
        self.links.append(
            Link(LinkKind.DELEGATE, index, None, [p.TAG_BEHAVIOR, name, module])
        )


def _is_instance(value: Any) -> bool:
    return hasattr(value, "__dict__") and behavior_ref(type(value)) is not None


def encode(value: Any) -> EncodedProgram:
    """Encode ``value`` with a fresh :class:`GraphEncoder`."""
    return GraphEncoder().encode(value)


__all__ = ["GraphEncoder", "encode"]
