"""
Decoding of raw model output into called bases.

Provides:
- DecodedChunk: Sequence, quality string and move table for one chunk
- Decoder: Abstract decoder contract
- GreedyDecoder: Reference best-transition CRF decoder
"""

from basecall_lite.decode.types import DecodedChunk
from basecall_lite.decode.decoder import Decoder, GreedyDecoder

__all__ = ["DecodedChunk", "Decoder", "GreedyDecoder"]
