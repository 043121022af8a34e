"""Decoder contract and the reference greedy CRF decoder."""

import math
from abc import ABC, abstractmethod
from typing import List

import torch

from basecall_lite.decode.types import DecodedChunk
from basecall_lite.errors import ConfigError, InvalidInput
from basecall_lite.models.tx.config import ModelConfig


class Decoder(ABC):
    """Abstract base class for decoders.

    A decoder turns raw model output for ``num_chunks`` entries into one
    DecodedChunk per entry, in order. Implementations must be deterministic
    and must treat every chunk independently.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the decoder name."""
        pass

    @abstractmethod
    def decode(self, raw_output: torch.Tensor, num_chunks: int) -> List[DecodedChunk]:
        """Decode the first ``num_chunks`` entries of ``raw_output``.

        Args:
            raw_output: Model output of shape [batch_size, seq_len, outsize]
            num_chunks: Number of leading entries to decode

        Returns:
            List of exactly ``num_chunks`` decoded chunks
        """
        pass


class GreedyDecoder(Decoder):
    """Greedy best-transition decoder for CRF scores.

    At every time step the highest scoring transition is taken. Transition 0
    of each state group is a stay; transition ``k > 0`` emits base ``k - 1``.
    The quality of an emitted base is derived from the softmax probability of
    the chosen transition.
    """

    MIN_QSCORE = 1
    MAX_QSCORE = 50

    def __init__(self, config: ModelConfig, alphabet: str = "ACGT") -> None:
        if len(alphabet) != config.n_base:
            raise ConfigError(
                f"alphabet '{alphabet}' does not match n_base ({config.n_base})"
            )
        self.alphabet = alphabet
        self.n_base = config.n_base
        self.outsize = config.outsize
        self.qscale = config.qscale
        self.qbias = config.qbias

    @property
    def name(self) -> str:
        return "greedy"

    def _qchar(self, prob: float) -> str:
        err = max(1.0 - prob, 1e-10)
        q = round(-10.0 * math.log10(err) * self.qscale + self.qbias)
        q = min(max(q, self.MIN_QSCORE), self.MAX_QSCORE)
        return chr(q + 33)

    def decode(self, raw_output: torch.Tensor, num_chunks: int) -> List[DecodedChunk]:
        if raw_output.dim() != 3 or raw_output.shape[-1] != self.outsize:
            raise InvalidInput(
                f"expected raw output of shape [N, T, {self.outsize}], got {tuple(raw_output.shape)}"
            )
        if not 0 <= num_chunks <= raw_output.shape[0]:
            raise InvalidInput(
                f"num_chunks ({num_chunks}) out of range for batch of {raw_output.shape[0]}"
            )
        if num_chunks == 0:
            return []

        scores = raw_output[:num_chunks].float()
        probs = torch.softmax(scores, dim=-1)
        best_prob, best_idx = probs.max(dim=-1)  # [N, T]
        transition = best_idx % (self.n_base + 1)

        # One host transfer for the whole batch.
        transition = transition.cpu().tolist()
        best_prob = best_prob.cpu().tolist()

        decoded = []
        for chunk_transitions, chunk_probs in zip(transition, best_prob):
            bases = []
            quals = []
            moves = []
            for t, p in zip(chunk_transitions, chunk_probs):
                if t == 0:
                    moves.append(0)
                    continue
                moves.append(1)
                bases.append(self.alphabet[t - 1])
                quals.append(self._qchar(p))
            decoded.append(DecodedChunk("".join(bases), "".join(quals), moves))
        return decoded
