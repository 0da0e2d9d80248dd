from typing import Optional, Sequence

import pytest
import torch

from u2stream.asr.abs_asr_model import AbsAsrModel
from u2stream.text.symbol_table import SymbolTable

UNITS = ["<blank>", "▁he", "llo", "▁wor", "ld", "你", "好", "<sos/eos>"]


class FakeAsrModel(AbsAsrModel):
    """Deterministic model: column 0 of the features holds unit ids.

    Encoder frame k of a chunk reads feature row `k * subsampling_rate` and
    puts most of its CTC mass on the unit stored there. The attention decoder
    gives every position the same distribution, `log_softmax(decoder_bias)`.

    """

    def __init__(
        self,
        vocab_size: int = len(UNITS),
        subsampling_rate: int = 4,
        right_context: int = 6,
        decoder_bias: Optional[torch.Tensor] = None,
        r_decoder_bias: Optional[torch.Tensor] = None,
        bidirectional: bool = False,
        peak: float = 8.0,
    ):
        self.vocab_size = vocab_size
        self._subsampling_rate = subsampling_rate
        self._right_context = right_context
        self._bidirectional = bidirectional
        self.peak = peak
        if decoder_bias is None:
            decoder_bias = torch.zeros(vocab_size)
        if r_decoder_bias is None:
            r_decoder_bias = decoder_bias
        self.decoder_bias = decoder_bias
        self.r_decoder_bias = r_decoder_bias
        self.num_decoder_calls = 0

    @property
    def subsampling_rate(self) -> int:
        return self._subsampling_rate

    @property
    def right_context(self) -> int:
        return self._right_context

    @property
    def sos(self) -> int:
        return self.vocab_size - 1

    @property
    def eos(self) -> int:
        return self.vocab_size - 1

    @property
    def is_bidirectional_decoder(self) -> bool:
        return self._bidirectional

    def init_cache(self):
        return {"offset": 0, "required_cache_size": None}

    def forward_encoder_chunk(self, feats, cache, required_cache_size):
        assert feats.dim() == 3 and feats.size(0) == 1
        num_out = (feats.size(1) - self._right_context - 1) // self._subsampling_rate + 1
        units = feats[0, :: self._subsampling_rate, 0][:num_out].round().long()
        logits = torch.zeros(num_out, self.vocab_size)
        logits[torch.arange(num_out), units] = self.peak
        ctc_logp = torch.log_softmax(logits, dim=-1)
        encoder_out = logits.unsqueeze(0)
        new_cache = {
            "offset": cache["offset"] + num_out,
            "required_cache_size": required_cache_size,
        }
        return encoder_out, ctc_logp, new_cache

    def forward_attention_decoder(
        self, hyps_pad, hyps_lens, encoder_out, reverse_weight=0.0
    ):
        self.num_decoder_calls += 1
        batch, max_len = hyps_pad.shape
        out = torch.log_softmax(self.decoder_bias, dim=-1).expand(
            batch, max_len, self.vocab_size
        )
        if not self._bidirectional:
            return out.clone(), None
        r_out = torch.log_softmax(self.r_decoder_bias, dim=-1).expand(
            batch, max_len, self.vocab_size
        )
        return out.clone(), r_out.clone()


def make_feats(
    units: Sequence[int],
    subsampling_rate: int = 4,
    right_context: int = 6,
    feat_dim: int = 80,
) -> torch.Tensor:
    """Features that make FakeAsrModel emit `units[k]` at encoder frame k."""
    num_frames = (len(units) - 1) * subsampling_rate + right_context + 1
    feats = torch.zeros(num_frames, feat_dim)
    for k, unit in enumerate(units):
        feats[k * subsampling_rate : (k + 1) * subsampling_rate, 0] = float(unit)
    return feats


@pytest.fixture()
def unit_table():
    return SymbolTable(UNITS)


@pytest.fixture()
def fake_model():
    return FakeAsrModel()


@pytest.fixture()
def model_factory():
    return FakeAsrModel


@pytest.fixture()
def feats_factory():
    return make_feats
