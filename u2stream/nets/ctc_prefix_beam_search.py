"""Streaming CTC prefix beam search.

References: https://arxiv.org/abs/1408.2873 for CTC prefix beam search.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import torch

from u2stream.nets.context_graph import ContextGraph
from u2stream.nets.hypothesis import Hypothesis
from u2stream.nets.search_interface import AbsSearch, SearchType
from u2stream.nets.topk import NEG_INF, log_add, select_topk


@dataclass(frozen=True)
class CtcPrefixBeamSearchConfig:
    blank: int = 0
    # units kept per frame before extension
    first_beam_size: int = 10
    # prefixes kept after each frame
    second_beam_size: int = 10


@dataclass
class PrefixScore:
    """Scores of one collapsed prefix.

    `s` / `ns` are the total log-probabilities of all paths ending in blank /
    non-blank; `v_s` / `v_ns` and `times_s` / `times_ns` describe the best
    single path, which gives the emission time of each unit.

    """

    s: float = NEG_INF
    ns: float = NEG_INF
    v_s: float = NEG_INF
    v_ns: float = NEG_INF
    cur_token_prob: float = NEG_INF
    times_s: List[int] = field(default_factory=list)
    times_ns: List[int] = field(default_factory=list)
    context_state: int = 0
    context_score: float = 0.0

    def score(self) -> float:
        return log_add(self.s, self.ns)

    def viterbi_score(self) -> float:
        return max(self.v_s, self.v_ns)

    def times(self) -> List[int]:
        return self.times_s if self.v_s > self.v_ns else self.times_ns

    def total_score(self) -> float:
        return self.score() + self.context_score


class CtcPrefixBeamSearch(AbsSearch):
    """Prefix beam search directly over model units.

    Paths that collapse to the same unit sequence are merged by log-sum-exp,
    so the first-pass score of a hypothesis is a sum over its paths (plus the
    context bonus when a context graph is given).

    """

    search_type = SearchType.PREFIX_BEAM

    def __init__(
        self,
        config: CtcPrefixBeamSearchConfig = CtcPrefixBeamSearchConfig(),
        context_graph: Optional[ContextGraph] = None,
    ):
        if config.first_beam_size < 1 or config.second_beam_size < 1:
            raise ValueError(f"beam sizes must be positive: {config}")
        self.config = config
        self.context_graph = context_graph
        self.reset()

    def reset(self) -> None:
        self.abs_time_step = 0
        self.cur_hyps: Dict[Tuple[int, ...], PrefixScore] = {
            (): PrefixScore(s=0.0, ns=NEG_INF, v_s=0.0, v_ns=0.0)
        }

    def _update_context(
        self, prefix_score: PrefixScore, unit: int, next_score: PrefixScore
    ):
        if self.context_graph is None:
            return
        delta, state = self.context_graph.get_next_state(
            prefix_score.context_state, unit
        )
        next_score.context_score = prefix_score.context_score + delta
        next_score.context_state = state

    @staticmethod
    def _copy_context(prefix_score: PrefixScore, next_score: PrefixScore):
        next_score.context_score = prefix_score.context_score
        next_score.context_state = prefix_score.context_state

    def advance_frame(self, logp: torch.Tensor) -> None:
        assert logp.dim() == 1, f"expected (V,) log-probs, got {tuple(logp.shape)}"
        blank = self.config.blank
        t = self.abs_time_step
        # 1. First beam prune: only extend with the best units of this frame
        top_probs, top_ids = select_topk(logp.tolist(), self.config.first_beam_size)

        # 2. Extend every prefix; insertion order of next_hyps is first-seen order
        next_hyps: Dict[Tuple[int, ...], PrefixScore] = {}
        for prefix, prefix_score in self.cur_hyps.items():
            for prob, unit in zip(top_probs, top_ids):
                if unit == blank:
                    # *a + ε -> *a
                    next_score = next_hyps.setdefault(prefix, PrefixScore())
                    next_score.s = log_add(next_score.s, prefix_score.score() + prob)
                    v = prefix_score.viterbi_score() + prob
                    if v > next_score.v_s:
                        next_score.v_s = v
                        next_score.times_s = prefix_score.times()
                    self._copy_context(prefix_score, next_score)
                elif len(prefix) > 0 and unit == prefix[-1]:
                    # *a + a -> *a (continuation of the same emission)
                    if prefix_score.ns != NEG_INF:
                        next_score = next_hyps.setdefault(prefix, PrefixScore())
                        next_score.ns = log_add(next_score.ns, prefix_score.ns + prob)
                        v = prefix_score.v_ns + prob
                        if v > next_score.v_ns:
                            next_score.v_ns = v
                            next_score.times_ns = list(prefix_score.times_ns)
                            if prob > prefix_score.cur_token_prob:
                                # move the time stamp to the peak of the unit
                                next_score.cur_token_prob = prob
                                next_score.times_ns[-1] = t
                            else:
                                next_score.cur_token_prob = prefix_score.cur_token_prob
                        self._copy_context(prefix_score, next_score)

                    # *aε + a -> *aa (new emission after a blank)
                    if prefix_score.s == NEG_INF:
                        continue
                    new_prefix = prefix + (unit,)
                    next_score = next_hyps.setdefault(new_prefix, PrefixScore())
                    next_score.ns = log_add(next_score.ns, prefix_score.s + prob)
                    v = prefix_score.v_s + prob
                    if v > next_score.v_ns:
                        next_score.v_ns = v
                        next_score.cur_token_prob = prob
                        next_score.times_ns = prefix_score.times_s + [t]
                    self._update_context(prefix_score, unit, next_score)
                else:
                    # *a + b -> *ab
                    new_prefix = prefix + (unit,)
                    next_score = next_hyps.setdefault(new_prefix, PrefixScore())
                    next_score.ns = log_add(next_score.ns, prefix_score.score() + prob)
                    v = prefix_score.viterbi_score() + prob
                    if v > next_score.v_ns:
                        next_score.v_ns = v
                        next_score.cur_token_prob = prob
                        next_score.times_ns = prefix_score.times() + [t]
                    self._update_context(prefix_score, unit, next_score)

        # 3. Second beam prune over merged prefixes
        candidates = list(next_hyps.items())
        _, keep = select_topk(
            [score.total_score() for _, score in candidates],
            self.config.second_beam_size,
        )
        self.cur_hyps = {candidates[i][0]: candidates[i][1] for i in keep}
        self.abs_time_step += 1

        if logging.getLogger().isEnabledFor(logging.DEBUG):
            best_prefix, best_score = next(iter(self.cur_hyps.items()))
            logging.debug(
                f"frame {t}: {len(self.cur_hyps)} prefixes, "
                f"best {list(best_prefix)} ({best_score.total_score():.2f})"
            )

    def current_beam(self) -> List[Hypothesis]:
        return [
            Hypothesis(
                yseq=prefix,
                score=score.total_score(),
                times=tuple(score.times()),
                olabels=prefix,
            )
            for prefix, score in self.cur_hyps.items()
        ]
