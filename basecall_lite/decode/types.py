"""
Decoded chunk dataclass.
"""

from dataclasses import dataclass, field
from typing import List


@dataclass
class DecodedChunk:
    """Decoded result for exactly one chunk.

    Attributes:
        sequence: Called bases
        qstring: Per-base phred quality string (phred+33), same length as sequence
        moves: Move table over the output time steps; 1 where a base was emitted
    """

    sequence: str
    qstring: str
    moves: List[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.sequence)

    @property
    def num_moves(self) -> int:
        return sum(self.moves)
