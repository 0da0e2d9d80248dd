"""Search interface module."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import List

import torch

from u2stream.nets.hypothesis import Hypothesis


class SearchType(Enum):
    PREFIX_BEAM = "ctc_prefix_beam_search"
    WFST_BEAM = "ctc_wfst_beam_search"


class AbsSearch(ABC):
    """First-pass search over per-frame CTC log-probabilities.

    Implementations keep a pruned beam that is advanced one frame at a time.
    `current_beam()` must not modify the search state.

    """

    search_type: SearchType

    @abstractmethod
    def reset(self) -> None:
        """Drop all hypotheses and restart from the empty prefix."""
        raise NotImplementedError

    @abstractmethod
    def advance_frame(self, logp: torch.Tensor) -> None:
        """Advance the beam by one frame.

        Args:
            logp (torch.Tensor): Log-probabilities of one frame (V,)

        """
        raise NotImplementedError

    def search(self, logp: torch.Tensor) -> None:
        """Advance the beam over every frame of a chunk in order.

        Args:
            logp (torch.Tensor): Log-probabilities of a chunk (T, V)

        """
        assert logp.dim() == 2, f"expected (T, V) log-probs, got {tuple(logp.shape)}"
        for t in range(logp.size(0)):
            self.advance_frame(logp[t])

    def finalize_search(self) -> None:
        """Apply end-of-utterance scoring (optional)."""
        pass

    @abstractmethod
    def current_beam(self) -> List[Hypothesis]:
        """Return the hypotheses of the beam, best first."""
        raise NotImplementedError
