"""CTC beam search constrained by a weighted finite-state transducer."""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import torch

from u2stream.fst.wfst import EPSILON, WeightedFst
from u2stream.nets.context_graph import ContextGraph
from u2stream.nets.hypothesis import Hypothesis
from u2stream.nets.search_interface import AbsSearch, SearchType
from u2stream.nets.topk import select_topk

# (fst state, unit prefix, whether the last frame was blank)
TokenKey = Tuple[int, Tuple[int, ...], bool]


@dataclass(frozen=True)
class CtcWfstBeamSearchConfig:
    blank: int = 0
    first_beam_size: int = 10
    second_beam_size: int = 10


@dataclass
class WfstToken:
    score: float
    times: Tuple[int, ...] = ()
    olabels: Tuple[int, ...] = ()
    context_state: int = 0
    context_score: float = 0.0

    def total_score(self) -> float:
        return self.score + self.context_score


class CtcWfstBeamSearch(AbsSearch):
    """Token passing over a decoding graph (units in, words out).

    Blank frames and repeated units stay in the current graph state; a new
    unit must follow an arc with that input label, possibly after epsilon
    arcs. Tokens that meet under the same key keep the better score, so the
    first-pass score is the best single path through acoustics and graph.

    """

    search_type = SearchType.WFST_BEAM

    def __init__(
        self,
        fst: WeightedFst,
        config: CtcWfstBeamSearchConfig = CtcWfstBeamSearchConfig(),
        context_graph: Optional[ContextGraph] = None,
    ):
        if config.first_beam_size < 1 or config.second_beam_size < 1:
            raise ValueError(f"beam sizes must be positive: {config}")
        self.fst = fst
        self.config = config
        self.context_graph = context_graph
        self._closure_cache: Dict[int, List[Tuple[int, float, Tuple[int, ...]]]] = {}
        self.reset()

    def reset(self) -> None:
        self.abs_time_step = 0
        self.cur_tokens: Dict[TokenKey, WfstToken] = {
            (self.fst.start, (), True): WfstToken(score=0.0)
        }

    def _closure(self, state: int) -> List[Tuple[int, float, Tuple[int, ...]]]:
        """States reachable through epsilon input arcs with their cost and output."""
        if state not in self._closure_cache:
            reached = [(state, 0.0, ())]
            visited = {state}
            i = 0
            while i < len(reached):
                src, cost, olabels = reached[i]
                for arc in self.fst.arcs(src):
                    if arc.ilabel != EPSILON or arc.nextstate in visited:
                        continue
                    visited.add(arc.nextstate)
                    out = olabels if arc.olabel == EPSILON else olabels + (arc.olabel,)
                    reached.append((arc.nextstate, cost + arc.weight, out))
                i += 1
            self._closure_cache[state] = reached
        return self._closure_cache[state]

    @staticmethod
    def _relax(tokens: Dict[TokenKey, WfstToken], key: TokenKey, token: WfstToken):
        prev = tokens.get(key)
        if prev is None or token.total_score() > prev.total_score():
            tokens[key] = token

    def advance_frame(self, logp: torch.Tensor) -> None:
        assert logp.dim() == 1, f"expected (V,) log-probs, got {tuple(logp.shape)}"
        blank = self.config.blank
        t = self.abs_time_step
        top_probs, top_ids = select_topk(logp.tolist(), self.config.first_beam_size)

        next_tokens: Dict[TokenKey, WfstToken] = {}
        for (state, prefix, in_blank), tok in self.cur_tokens.items():
            for prob, unit in zip(top_probs, top_ids):
                if unit == blank:
                    self._relax(
                        next_tokens,
                        (state, prefix, True),
                        WfstToken(
                            tok.score + prob,
                            tok.times,
                            tok.olabels,
                            tok.context_state,
                            tok.context_score,
                        ),
                    )
                    continue
                if len(prefix) > 0 and unit == prefix[-1] and not in_blank:
                    self._relax(
                        next_tokens,
                        (state, prefix, False),
                        WfstToken(
                            tok.score + prob,
                            tok.times,
                            tok.olabels,
                            tok.context_state,
                            tok.context_score,
                        ),
                    )
                    continue

                if self.context_graph is not None:
                    delta, context_state = self.context_graph.get_next_state(
                        tok.context_state, unit
                    )
                else:
                    delta, context_state = 0.0, 0
                for src, eps_cost, eps_olabels in self._closure(state):
                    for arc in self.fst.arcs(src):
                        if arc.ilabel != unit:
                            continue
                        olabels = tok.olabels + eps_olabels
                        if arc.olabel != EPSILON:
                            olabels = olabels + (arc.olabel,)
                        self._relax(
                            next_tokens,
                            (arc.nextstate, prefix + (unit,), False),
                            WfstToken(
                                tok.score + prob - eps_cost - arc.weight,
                                tok.times + (t,),
                                olabels,
                                context_state,
                                tok.context_score + delta,
                            ),
                        )

        if len(next_tokens) == 0:
            # no unit of this frame is allowed by the graph: keep the beam
            logging.debug(f"frame {t}: graph allows no extension, beam kept")
            self.abs_time_step += 1
            return
        self.cur_tokens = self._prune(next_tokens)
        self.abs_time_step += 1

    def _prune(self, tokens: Dict[TokenKey, WfstToken]) -> Dict[TokenKey, WfstToken]:
        candidates = list(tokens.items())
        _, keep = select_topk(
            [tok.total_score() for _, tok in candidates],
            self.config.second_beam_size,
        )
        return {candidates[i][0]: candidates[i][1] for i in keep}

    def finalize_search(self) -> None:
        """Add final costs; non-final tokens are dropped if any token is final."""
        finished: Dict[TokenKey, WfstToken] = {}
        for (state, prefix, in_blank), tok in self.cur_tokens.items():
            best = math.inf
            best_olabels: Tuple[int, ...] = ()
            for src, eps_cost, eps_olabels in self._closure(state):
                cost = eps_cost + self.fst.final(src)
                if cost < best:
                    best, best_olabels = cost, eps_olabels
            if math.isinf(best):
                continue
            finished[(state, prefix, in_blank)] = WfstToken(
                tok.score - best,
                tok.times,
                tok.olabels + best_olabels,
                tok.context_state,
                tok.context_score,
            )
        if len(finished) == 0:
            logging.warning("No token reached a final state, using non-final tokens")
            return
        self.cur_tokens = self._prune(finished)

    def current_beam(self) -> List[Hypothesis]:
        hyps: Dict[Tuple[int, ...], Hypothesis] = {}
        for (_, prefix, _), tok in self.cur_tokens.items():
            # tokens are ordered best first: keep the first one per unit sequence
            if prefix not in hyps:
                hyps[prefix] = Hypothesis(
                    yseq=prefix,
                    score=tok.total_score(),
                    times=tok.times,
                    olabels=tok.olabels,
                )
        return list(hyps.values())
