"""Attention rescoring of first-pass hypotheses."""

import logging
from typing import List, Optional, Sequence

import torch

from u2stream.asr.abs_asr_model import AbsAsrModel


def compute_path_score(logp: torch.Tensor, hyp: Sequence[int], eos: int) -> float:
    """Sum the log-probabilities of `hyp` followed by `eos`, position by position.

    Args:
        logp (torch.Tensor): Decoder log-probabilities (Umax, V) or (1, Umax, V)
        hyp (Sequence[int]): Unit ids without sos/eos
        eos (int): End-of-sequence id, scored at position len(hyp)

    Returns:
        float: logp[0][hyp[0]] + ... + logp[U-1][hyp[U-1]] + logp[U][eos]

    Examples:
        >>> logp = torch.log(torch.full((1, 3, 4), 0.25))
        >>> round(compute_path_score(logp, [1, 2], eos=3), 4)
        -4.1589

    """
    if logp.dim() == 3:
        assert logp.size(0) == 1, f"expected a single hypothesis, got {logp.shape}"
        logp = logp[0]
    assert logp.dim() == 2, f"expected (Umax, V) log-probs, got {tuple(logp.shape)}"
    assert logp.size(0) > len(hyp), (
        f"{logp.size(0)} decoder steps can't score {len(hyp)} units and eos"
    )
    positions = torch.arange(len(hyp) + 1, device=logp.device)
    units = torch.tensor(list(hyp) + [eos], dtype=torch.long, device=logp.device)
    return logp[positions, units].sum().item()


class AttentionRescorer:
    """Score hypotheses with the attention decoder of the model.

    The left-to-right score and, for bidirectional decoders, the score of the
    reversed hypothesis under the right-to-left decoder are fused as
    `score * (1 - reverse_weight) + r_score * reverse_weight`.

    """

    def __init__(self, model: AbsAsrModel):
        self.model = model

    def rescore(
        self,
        hyps: Sequence[Sequence[int]],
        encoder_out: Optional[torch.Tensor],
        reverse_weight: float = 0.0,
    ) -> List[float]:
        """Rescore hypotheses against the encoder output of the utterance.

        Args:
            hyps: Unit sequences of the beam
            encoder_out (torch.Tensor): Concatenated encoder output (1, T, D)
            reverse_weight (float): Weight of the right-to-left decoder

        Returns:
            List[float]: Fused attention score per hypothesis

        """
        num_hyps = len(hyps)
        if num_hyps == 0:
            return []
        if encoder_out is None or encoder_out.size(1) == 0:
            logging.warning("No encoder output to rescore against, scores are zero")
            return [0.0] * num_hyps
        if reverse_weight > 0 and not self.model.is_bidirectional_decoder:
            raise ValueError(
                f"reverse_weight={reverse_weight} requires a bidirectional decoder"
            )

        eos = self.model.eos
        # sos + hyp, padded with eos; eos closes every sequence
        hyps_lens = torch.tensor([len(hyp) + 1 for hyp in hyps], dtype=torch.long)
        max_len = int(hyps_lens.max())
        hyps_pad = torch.full((num_hyps, max_len), eos, dtype=torch.long)
        hyps_pad[:, 0] = self.model.sos
        for i, hyp in enumerate(hyps):
            if len(hyp) > 0:
                hyps_pad[i, 1 : len(hyp) + 1] = torch.tensor(hyp, dtype=torch.long)

        decoder_out, r_decoder_out = self.model.forward_attention_decoder(
            hyps_pad, hyps_lens, encoder_out, reverse_weight
        )
        assert decoder_out.dim() == 3 and decoder_out.shape[:2] == (
            num_hyps,
            max_len,
        ), f"decoder output {tuple(decoder_out.shape)} != ({num_hyps}, {max_len}, V)"
        if reverse_weight > 0:
            if r_decoder_out is None:
                raise ValueError(
                    f"reverse_weight={reverse_weight} but the model returned "
                    "no right-to-left decoder output"
                )
            assert r_decoder_out.shape == decoder_out.shape, (
                f"right-to-left decoder output {tuple(r_decoder_out.shape)} "
                f"!= {tuple(decoder_out.shape)}"
            )

        scores = []
        for i, hyp in enumerate(hyps):
            score = compute_path_score(decoder_out[i], hyp, eos)
            r_score = 0.0
            if reverse_weight > 0:
                r_score = compute_path_score(r_decoder_out[i], list(reversed(hyp)), eos)
            scores.append(score * (1 - reverse_weight) + r_score * reverse_weight)
            logging.debug(
                f"hyp {i} score: {score:.4f} r_score: {r_score:.4f} "
                f"reverse_weight: {reverse_weight}"
            )
        return scores
