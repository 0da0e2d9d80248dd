import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple, Union

import torch
from typeguard import typechecked

from u2stream.asr.abs_asr_model import AbsAsrModel


def _empty_cache() -> torch.Tensor:
    return torch.zeros((0, 0, 0, 0), dtype=torch.float32)


@dataclass
class EncoderCache:
    """Per-session encoder state: frame offset, attention and conv caches."""

    offset: int = 0
    att_cache: torch.Tensor = field(default_factory=_empty_cache)
    cnn_cache: torch.Tensor = field(default_factory=_empty_cache)


class TorchScriptAsrModel(AbsAsrModel):
    """Adapter over an exported U2 TorchScript module.

    The module must export `subsampling_rate`, `right_context`,
    `sos_symbol`, `eos_symbol`, `is_bidirectional_decoder`,
    `forward_encoder_chunk`, `ctc_activation` and
    `forward_attention_decoder`.

    """

    @typechecked
    def __init__(self, module: torch.nn.Module, device: str = "cpu"):
        self.module = module
        self.device = torch.device(device)
        self._subsampling_rate = int(module.subsampling_rate())
        self._right_context = int(module.right_context())
        self._sos = int(module.sos_symbol())
        self._eos = int(module.eos_symbol())
        self._is_bidirectional_decoder = bool(module.is_bidirectional_decoder())
        logging.info(
            f"Model: subsampling_rate={self._subsampling_rate}, "
            f"right_context={self._right_context}, sos={self._sos}, "
            f"eos={self._eos}, "
            f"bidirectional_decoder={self._is_bidirectional_decoder}"
        )

    @classmethod
    @typechecked
    def from_file(
        cls, model_path: Union[Path, str], device: str = "cpu"
    ) -> "TorchScriptAsrModel":
        logging.info(f"Loading TorchScript model from {model_path}")
        module = torch.jit.load(str(model_path), map_location=device)
        module.eval()
        return cls(module, device=device)

    @property
    def subsampling_rate(self) -> int:
        return self._subsampling_rate

    @property
    def right_context(self) -> int:
        return self._right_context

    @property
    def sos(self) -> int:
        return self._sos

    @property
    def eos(self) -> int:
        return self._eos

    @property
    def is_bidirectional_decoder(self) -> bool:
        return self._is_bidirectional_decoder

    def init_cache(self) -> EncoderCache:
        return EncoderCache()

    @torch.no_grad()
    def forward_encoder_chunk(
        self,
        feats: torch.Tensor,
        cache: EncoderCache,
        required_cache_size: int,
    ) -> Tuple[torch.Tensor, torch.Tensor, EncoderCache]:
        assert feats.dim() == 3 and feats.size(0) == 1, (
            f"expected (1, T, D) features, got {tuple(feats.shape)}"
        )
        encoder_out, att_cache, cnn_cache = self.module.forward_encoder_chunk(
            feats.to(self.device),
            cache.offset,
            required_cache_size,
            cache.att_cache.to(self.device),
            cache.cnn_cache.to(self.device),
        )
        ctc_logp = self.module.ctc_activation(encoder_out)
        assert ctc_logp.dim() == 3 and ctc_logp.size(0) == 1, (
            f"expected (1, T, V) ctc output, got {tuple(ctc_logp.shape)}"
        )
        new_cache = EncoderCache(
            offset=cache.offset + encoder_out.size(1),
            att_cache=att_cache,
            cnn_cache=cnn_cache,
        )
        return encoder_out.cpu(), ctc_logp[0].cpu(), new_cache

    @torch.no_grad()
    def forward_attention_decoder(
        self,
        hyps_pad: torch.Tensor,
        hyps_lens: torch.Tensor,
        encoder_out: torch.Tensor,
        reverse_weight: float = 0.0,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        decoder_out, r_decoder_out = self.module.forward_attention_decoder(
            hyps_pad.to(self.device),
            hyps_lens.to(self.device),
            encoder_out.to(self.device),
            reverse_weight,
        )
        if not self._is_bidirectional_decoder:
            # exported unidirectional models return a placeholder here
            return decoder_out.cpu(), None
        return decoder_out.cpu(), r_decoder_out.cpu()
