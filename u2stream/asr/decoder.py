"""Streaming decoding session: chunked encoding, first pass and rescoring."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import torch
from typeguard import typechecked

from u2stream.asr.abs_asr_model import AbsAsrModel
from u2stream.fst.wfst import WeightedFst
from u2stream.frontend.feature_pipeline import FeaturePipeline
from u2stream.nets.attention_rescoring import AttentionRescorer
from u2stream.nets.context_graph import ContextGraph
from u2stream.nets.ctc_endpoint import CtcEndpoint, CtcEndpointConfig
from u2stream.nets.ctc_prefix_beam_search import (
    CtcPrefixBeamSearch,
    CtcPrefixBeamSearchConfig,
)
from u2stream.nets.ctc_wfst_beam_search import (
    CtcWfstBeamSearch,
    CtcWfstBeamSearchConfig,
)
from u2stream.nets.hypothesis import DecodeResult, Hypothesis, WordPiece
from u2stream.nets.search_interface import AbsSearch, SearchType
from u2stream.text.post_processor import PostProcessor
from u2stream.text.symbol_table import SymbolTable


class DecodeState(Enum):
    END_BATCH = 0  # a chunk was decoded, more input may follow
    ENDPOINT = 1  # an utterance boundary was detected
    END_FEATS = 2  # every feature frame has been decoded
    WAIT_FEATS = 3  # not enough frames for one chunk yet


@dataclass(frozen=True)
class DecodeOptions:
    """Options of one decoding session.

    The final score of a hypothesis is
    `rescoring_weight * attention_score + ctc_weight * first_pass_score`. The
    first-pass score sums over paths for prefix search but is a best-path
    score for graph search, so the weights are tuned per search type.

    """

    # encoder frames per chunk; <= 0 decodes the whole input at once
    chunk_size: int = 16
    # chunks of left context kept by the encoder; negative is unlimited
    num_left_chunks: int = -1
    ctc_weight: float = 0.5
    rescoring_weight: float = 1.0
    reverse_weight: float = 0.0
    # gap in encoder frames that always separates two words
    time_stamp_gap: int = 100
    endpoint_config: CtcEndpointConfig = CtcEndpointConfig()
    prefix_search_config: CtcPrefixBeamSearchConfig = CtcPrefixBeamSearchConfig()
    wfst_search_config: CtcWfstBeamSearchConfig = CtcWfstBeamSearchConfig()


@dataclass(frozen=True)
class DecodeResource:
    """Read-only resources shared by every session.

    With `fst` the graph search is used and `symbol_table` maps its output
    labels to words; otherwise the prefix search runs on model units.

    """

    model: AbsAsrModel
    unit_table: SymbolTable
    symbol_table: Optional[SymbolTable] = None
    fst: Optional[WeightedFst] = None
    context_graph: Optional[ContextGraph] = None
    post_processor: PostProcessor = field(default_factory=PostProcessor)


class AsrDecoder:
    """One decoding session over a feature pipeline.

    Typical usage::

        decoder = AsrDecoder(pipeline, resource, DecodeOptions())
        while True:
            state = decoder.decode()
            if state == DecodeState.END_FEATS:
                decoder.rescoring()
                break
        print(decoder.best_result().sentence)

    The session owns the encoder cache, the encoder outputs of the current
    utterance, the search beam and the endpoint state; the resource is only
    read.

    """

    @typechecked
    def __init__(
        self,
        feature_pipeline: FeaturePipeline,
        resource: DecodeResource,
        opts: DecodeOptions = DecodeOptions(),
    ):
        model = resource.model.copy()
        if not 0.0 <= opts.reverse_weight <= 1.0:
            raise ValueError(f"reverse_weight must be in [0, 1]: {opts.reverse_weight}")
        if opts.reverse_weight > 0 and not model.is_bidirectional_decoder:
            raise ValueError(
                f"reverse_weight={opts.reverse_weight} but the model has no "
                "right-to-left decoder"
            )
        if resource.fst is not None and resource.symbol_table is None:
            raise ValueError("Graph search needs the symbol table of its outputs")

        self.feature_pipeline = feature_pipeline
        self.resource = resource
        self.opts = opts
        self.model = model
        self.post_processor = resource.post_processor

        if resource.fst is not None:
            self.searcher: AbsSearch = CtcWfstBeamSearch(
                resource.fst, opts.wfst_search_config, resource.context_graph
            )
        else:
            self.searcher = CtcPrefixBeamSearch(
                opts.prefix_search_config, resource.context_graph
            )
        self.endpointer = CtcEndpoint(opts.endpoint_config)
        self.rescorer = AttentionRescorer(model)

        self.num_frames = 0
        self.global_frame_offset = 0
        self._reset_utterance()

    def _reset_utterance(self):
        self._started = False
        self._cache = self.model.init_cache()
        self._cached_feats: Optional[torch.Tensor] = None
        self._encoder_outs: List[torch.Tensor] = []
        self.num_frames_in_current_chunk = 0
        self.result: List[DecodeResult] = []
        self.searcher.reset()
        self.endpointer.reset()

    def reset(self) -> None:
        """Prepare the session, including its feature pipeline, for a new input."""
        self._reset_utterance()
        self.num_frames = 0
        self.global_frame_offset = 0
        self.feature_pipeline.reset()

    def reset_continuous_decoding(self) -> None:
        """Start the next utterance of the same input.

        Time stamps keep counting from the frames already decoded.

        """
        self.global_frame_offset = self.num_frames
        self._reset_utterance()

    @property
    def feature_frame_shift_in_ms(self) -> int:
        conf = self.feature_pipeline.config
        return conf.frame_shift * 1000 // conf.sample_rate

    @property
    def frame_shift_in_ms(self) -> int:
        return self.model.subsampling_rate * self.feature_frame_shift_in_ms

    def decoded_something(self) -> bool:
        return len(self.result) > 0 and len(self.result[0].sentence) > 0

    def best_result(self) -> DecodeResult:
        """Best hypothesis; an empty result with NO_HYPOTHESIS_SCORE if it is empty."""
        if not self.decoded_something():
            return DecodeResult()
        return self.result[0]

    def _read_chunk(self, block: bool) -> Optional[torch.Tensor]:
        chunk_size = self.opts.chunk_size
        if chunk_size <= 0:
            return self.feature_pipeline.read_all(block)
        sub = self.model.subsampling_rate
        if not self._started:
            num_required = (chunk_size - 1) * sub + self.model.right_context + 1
        else:
            num_required = chunk_size * sub
        return self.feature_pipeline.read(num_required, block)

    def decode(self, block: bool = True) -> DecodeState:
        """Decode the next chunk of features.

        Args:
            block (bool): Wait for enough frames instead of returning
                WAIT_FEATS

        Returns:
            DecodeState: END_FEATS when the input is exhausted, ENDPOINT when
                a boundary was detected, END_BATCH otherwise

        """
        chunk_feats = self._read_chunk(block)
        if chunk_feats is None:
            return DecodeState.WAIT_FEATS
        finished = self.feature_pipeline.is_exhausted()
        self.num_frames_in_current_chunk = chunk_feats.size(0)

        if self._cached_feats is not None:
            feats = torch.cat([self._cached_feats, chunk_feats], dim=0)
        else:
            feats = chunk_feats
        if chunk_feats.size(0) > 0:
            self._started = True

        context = self.model.right_context + 1
        if feats.size(0) >= context:
            self._forward_chunk(feats)
            # overlap needed by the subsampling of the next chunk
            num_cached = context - self.model.subsampling_rate
            self._cached_feats = feats[-num_cached:] if num_cached > 0 else None
        elif feats.size(0) > 0:
            logging.debug(
                f"Skip {feats.size(0)} frames, shorter than the model context "
                f"{context}"
            )

        if finished:
            return DecodeState.END_FEATS
        if self.endpointer.detected:
            return DecodeState.ENDPOINT
        return DecodeState.END_BATCH

    def _forward_chunk(self, feats: torch.Tensor):
        opts = self.opts
        if opts.chunk_size > 0 and opts.num_left_chunks >= 0:
            required_cache_size = opts.chunk_size * opts.num_left_chunks
        else:
            required_cache_size = -1

        encoder_out, ctc_logp, self._cache = self.model.forward_encoder_chunk(
            feats.unsqueeze(0), self._cache, required_cache_size
        )
        assert ctc_logp.dim() == 2, f"expected (T, V) log-probs, got {ctc_logp.shape}"
        assert encoder_out.dim() == 3 and encoder_out.size(1) == ctc_logp.size(0), (
            f"encoder output {tuple(encoder_out.shape)} does not match "
            f"ctc output {tuple(ctc_logp.shape)}"
        )
        self._encoder_outs.append(encoder_out)
        self.searcher.search(ctc_logp)
        self._update_result(finish=False)
        self.endpointer.accept_log_probs(ctc_logp, self.decoded_something())
        self.num_frames += ctc_logp.size(0)
        logging.debug(
            f"Decoded {feats.size(0)} feature frames into {ctc_logp.size(0)} "
            f"frames, total {self.num_frames}"
        )

    def rescoring(self) -> None:
        """Finish the first pass and rerank the beam with the attention decoder."""
        self.searcher.finalize_search()
        self._update_result(finish=True)
        if self.opts.rescoring_weight == 0.0 or len(self.result) == 0:
            return

        if len(self._encoder_outs) > 0:
            encoder_out = torch.cat(self._encoder_outs, dim=1)
        else:
            encoder_out = None
        scores = self.rescorer.rescore(
            [r.tokens for r in self.result], encoder_out, self.opts.reverse_weight
        )
        for result, score in zip(self.result, scores):
            result.score = (
                self.opts.rescoring_weight * score + self.opts.ctc_weight * result.score
            )
        self.result.sort(key=lambda r: r.score, reverse=True)
        logging.debug(
            f"Rescored {len(scores)} hypotheses, best: {self.result[0].sentence}"
        )

    def _update_result(self, finish: bool):
        results = []
        for hyp in self.searcher.current_beam():
            if self.searcher.search_type == SearchType.WFST_BEAM:
                # output words, CJK spaces are removed by the post processor
                sentence = " ".join(
                    self.resource.symbol_table.ids2symbols(hyp.olabels)
                )
            else:
                sentence = "".join(self.resource.unit_table.ids2symbols(hyp.yseq))
            result = DecodeResult(
                score=hyp.score,
                sentence=self.post_processor.process(sentence, finish),
                tokens=hyp.yseq,
            )
            if finish:
                result.word_pieces = self._word_pieces(hyp)
            results.append(result)
        self.result = results

    def _word_pieces(self, hyp: Hypothesis) -> List[WordPiece]:
        """Group the units of `hyp` into words with absolute frame spans."""
        pieces = []
        prev_frame = None
        for unit, time in zip(hyp.yseq, hyp.times):
            frame = self.global_frame_offset + time
            text = self.resource.unit_table.find(unit)
            if (
                prev_frame is None
                or frame - prev_frame > self.opts.time_stamp_gap
                or self.post_processor.is_word_start(text)
            ):
                pieces.append([text, frame, frame + 1])
            else:
                pieces[-1][0] += text
                pieces[-1][2] = frame + 1
            prev_frame = frame
        return [
            WordPiece(self.post_processor.process(word, finish=True), start, end)
            for word, start, end in pieces
        ]
