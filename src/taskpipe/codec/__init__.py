"""Graph codec.

Converts an arbitrary object graph into a flat, JSON-compatible
:class:`EncodedProgram` and replays it into an equivalent graph: same
aliasing, same cycles, same Map/Set membership and same class-provided
behavior.

Components:
- GraphEncoder / encode: object graph -> EncodedProgram
- GraphDecoder / decode: EncodedProgram -> object graph
- EncodedProgram, Link, LinkKind: the program format
"""

from taskpipe.codec.program import EncodedProgram, Link, LinkKind
from taskpipe.codec.encoder import GraphEncoder, encode
from taskpipe.codec.decoder import GraphDecoder, decode

__all__ = [
    # Program format
    "EncodedProgram",
    "Link",
    "LinkKind",
    # Encoder
    "GraphEncoder",
    "encode",
    # Decoder
    "GraphDecoder",
    "decode",
]
