import copy
from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple

import torch


class AbsAsrModel(ABC):
    """
    Abstract interface of a streaming CTC/attention acoustic model.

    Implementations are read-only handles: the recurrent state of a decoding
    session lives in the cache object returned by `init_cache()` and threaded
    through `forward_encoder_chunk`, so one handle can serve any number of
    concurrent sessions.

    Examples:
        class MyModel(AbsAsrModel):
            ...

        model = MyModel()
        cache = model.init_cache()
        encoder_out, ctc_logp, cache = model.forward_encoder_chunk(
            feats, cache, required_cache_size=-1
        )

    Note:
        Implementations must not keep per-session state on the handle itself.
    """

    @property
    @abstractmethod
    def subsampling_rate(self) -> int:
        """Number of feature frames per encoder output frame."""
        raise NotImplementedError

    @property
    @abstractmethod
    def right_context(self) -> int:
        """Feature frames of look-ahead needed by the subsampling front."""
        raise NotImplementedError

    @property
    @abstractmethod
    def sos(self) -> int:
        raise NotImplementedError

    @property
    @abstractmethod
    def eos(self) -> int:
        raise NotImplementedError

    @property
    @abstractmethod
    def is_bidirectional_decoder(self) -> bool:
        """Whether `forward_attention_decoder` can return right-to-left scores."""
        raise NotImplementedError

    @abstractmethod
    def init_cache(self) -> Any:
        """Return the empty cache of a new utterance."""
        raise NotImplementedError

    @abstractmethod
    def forward_encoder_chunk(
        self,
        feats: torch.Tensor,
        cache: Any,
        required_cache_size: int,
    ) -> Tuple[torch.Tensor, torch.Tensor, Any]:
        """
        Encode one chunk of features.

        Args:
            feats (torch.Tensor): Spliced feature frames (1, T, D)
            cache: Cache returned by the previous call or `init_cache()`
            required_cache_size (int): Encoder frames of left context to keep,
                negative for unlimited context

        Returns:
            Tuple[torch.Tensor, torch.Tensor, Any]:
                - Encoder output (1, T', D')
                - CTC log-probabilities (T', V)
                - Updated cache
        """
        raise NotImplementedError

    @abstractmethod
    def forward_attention_decoder(
        self,
        hyps_pad: torch.Tensor,
        hyps_lens: torch.Tensor,
        encoder_out: torch.Tensor,
        reverse_weight: float = 0.0,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        """
        Score a batch of hypotheses with the attention decoder.

        Args:
            hyps_pad (torch.Tensor): sos-prefixed, eos-padded hypotheses (B, Umax)
            hyps_lens (torch.Tensor): Lengths including sos (B,)
            encoder_out (torch.Tensor): Encoder output of the utterance (1, T, D)
            reverse_weight (float): Weight of the right-to-left decoder

        Returns:
            Tuple[torch.Tensor, Optional[torch.Tensor]]:
                - Left-to-right log-probabilities (B, Umax, V)
                - Right-to-left log-probabilities (B, Umax, V) of the reversed
                  hypotheses, or None without a backward decoder
        """
        raise NotImplementedError

    def copy(self) -> "AbsAsrModel":
        """Return a new handle sharing the weights of this one."""
        return copy.copy(self)
