import threading
import time
from dataclasses import replace

import pytest
import torch
from conftest import FakeAsrModel

from u2stream.asr.decoder import AsrDecoder, DecodeOptions, DecodeResource, DecodeState
from u2stream.fst.wfst import Arc, WeightedFst
from u2stream.frontend.feature_pipeline import FeaturePipeline, FeaturePipelineConfig
from u2stream.nets.attention_rescoring import compute_path_score
from u2stream.nets.ctc_endpoint import CtcEndpointConfig, EndpointState
from u2stream.nets.hypothesis import NO_HYPOTHESIS_SCORE, WordPiece
from u2stream.text.symbol_table import SymbolTable

HELLO_WORLD = [0, 1, 0, 2, 0, 0, 3, 4, 0]
LONG_UTTERANCE = ([0, 1, 0, 2, 0, 0, 3, 4, 0, 5, 0, 6] * 4)[:40]


def make_decoder(model, unit_table, feats=None, opts=DecodeOptions(), **kwargs):
    pipeline = FeaturePipeline(FeaturePipelineConfig())
    if feats is not None:
        pipeline.accept_features(feats)
        pipeline.set_input_finished()
    resource = DecodeResource(model=model, unit_table=unit_table, **kwargs)
    return AsrDecoder(pipeline, resource, opts)


def decode_all(decoder, block=True):
    states = []
    while True:
        state = decoder.decode(block)
        states.append(state)
        if state == DecodeState.END_FEATS:
            decoder.rescoring()
            return states


def test_decode_prefix_search(fake_model, unit_table, feats_factory):
    opts = DecodeOptions(rescoring_weight=0.0)
    decoder = make_decoder(fake_model, unit_table, feats_factory(HELLO_WORLD), opts)
    assert decode_all(decoder) == [DecodeState.END_FEATS]

    best = decoder.best_result()
    assert best.sentence == "hello world"
    assert best.tokens == (1, 2, 3, 4)
    assert best.word_pieces == [WordPiece("hello", 1, 4), WordPiece("world", 6, 8)]
    assert decoder.num_frames == len(HELLO_WORLD)
    assert decoder.decoded_something()


def test_rescoring_keeps_clear_winner(fake_model, unit_table, feats_factory):
    decoder = make_decoder(fake_model, unit_table, feats_factory(HELLO_WORLD))
    decode_all(decoder)
    assert decoder.best_result().sentence == "hello world"
    assert fake_model.num_decoder_calls == 0
    assert decoder.model.num_decoder_calls == 1


def test_rescoring_fuses_scores(model_factory, unit_table, feats_factory):
    torch.manual_seed(0)
    bias = torch.randn(len(unit_table))
    model = model_factory(decoder_bias=bias, peak=2.0)
    opts = DecodeOptions(ctc_weight=0.3, rescoring_weight=0.7)
    decoder = make_decoder(model, unit_table, feats_factory(HELLO_WORLD), opts)
    while decoder.decode() != DecodeState.END_FEATS:
        pass
    first_pass = {hyp.yseq: hyp.score for hyp in decoder.searcher.current_beam()}
    assert len(first_pass) > 1

    decoder.rescoring()
    logp = torch.log_softmax(bias, dim=-1).expand(len(HELLO_WORLD) + 1, len(bias))
    for result in decoder.result:
        att_score = compute_path_score(logp, result.tokens, model.eos)
        expected = 0.7 * att_score + 0.3 * first_pass[result.tokens]
        assert result.score == pytest.approx(expected, abs=1e-4)
    scores = [result.score for result in decoder.result]
    assert scores == sorted(scores, reverse=True)


def test_reverse_rescoring(model_factory, unit_table, feats_factory):
    bias = torch.zeros(len(unit_table))
    r_bias = torch.full((len(unit_table),), -1.0)
    r_bias[2] = 3.0
    model = model_factory(decoder_bias=bias, r_decoder_bias=r_bias, bidirectional=True)
    opts = DecodeOptions(reverse_weight=0.5)
    decoder = make_decoder(model, unit_table, feats_factory(HELLO_WORLD), opts)
    decode_all(decoder)
    assert decoder.best_result().sentence == "hello world"
    assert decoder.model.num_decoder_calls == 1


@pytest.mark.parametrize("num_left_chunks, required_cache_size", [(-1, -1), (2, 8)])
def test_streaming_matches_full_utterance(
    fake_model, unit_table, feats_factory, num_left_chunks, required_cache_size
):
    feats = feats_factory(LONG_UTTERANCE)
    full = make_decoder(
        fake_model, unit_table, feats, DecodeOptions(chunk_size=-1)
    )
    assert decode_all(full) == [DecodeState.END_FEATS]

    opts = DecodeOptions(chunk_size=4, num_left_chunks=num_left_chunks)
    streaming = make_decoder(fake_model, unit_table, feats, opts)
    states = decode_all(streaming)
    assert states == [DecodeState.END_BATCH] * 9 + [DecodeState.END_FEATS]
    assert streaming._cache["required_cache_size"] == required_cache_size
    assert streaming._cache["offset"] == len(LONG_UTTERANCE)

    assert streaming.num_frames == full.num_frames == len(LONG_UTTERANCE)
    assert torch.equal(
        torch.cat(streaming._encoder_outs, dim=1), torch.cat(full._encoder_outs, dim=1)
    )
    assert len(streaming.result) == len(full.result)
    for s, f in zip(streaming.result, full.result):
        assert s.sentence == f.sentence
        assert s.tokens == f.tokens
        assert s.word_pieces == f.word_pieces
        assert s.score == pytest.approx(f.score, abs=1e-4)


def test_partial_result_grows(fake_model, unit_table, feats_factory):
    opts = DecodeOptions(chunk_size=2, rescoring_weight=0.0)
    decoder = make_decoder(fake_model, unit_table, feats_factory(HELLO_WORLD), opts)
    partials = []
    while True:
        state = decoder.decode()
        partials.append(decoder.result[0].sentence)
        if state == DecodeState.END_FEATS:
            break
    assert partials[0] == "he"
    assert partials[-1].strip() == "hello world"
    # word pieces are only computed for final results
    assert decoder.result[0].word_pieces == []
    decoder.rescoring()
    assert len(decoder.best_result().word_pieces) == 2


def test_wait_feats(fake_model, unit_table, feats_factory):
    feats = feats_factory(HELLO_WORLD)
    opts = DecodeOptions(rescoring_weight=0.0)
    decoder = make_decoder(fake_model, unit_table, opts=opts)
    decoder.feature_pipeline.accept_features(feats[:10])
    assert decoder.decode(block=False) == DecodeState.WAIT_FEATS
    assert decoder.num_frames == 0

    decoder.feature_pipeline.accept_features(feats[10:])
    decoder.feature_pipeline.set_input_finished()
    assert decode_all(decoder, block=False) == [DecodeState.END_FEATS]
    assert decoder.best_result().sentence == "hello world"


def test_blocking_decode_with_producer(fake_model, unit_table, feats_factory):
    feats = feats_factory(LONG_UTTERANCE)
    decoder = make_decoder(fake_model, unit_table, opts=DecodeOptions(chunk_size=4))

    def produce():
        for start in range(0, feats.size(0), 20):
            decoder.feature_pipeline.accept_features(feats[start : start + 20])
            time.sleep(0.001)
        decoder.feature_pipeline.set_input_finished()

    producer = threading.Thread(target=produce)
    producer.start()
    states = decode_all(decoder)
    producer.join()

    assert DecodeState.WAIT_FEATS not in states
    assert decoder.num_frames == len(LONG_UTTERANCE)
    reference = make_decoder(fake_model, unit_table, feats, DecodeOptions(chunk_size=-1))
    decode_all(reference)
    assert decoder.best_result().sentence == reference.best_result().sentence


def test_leading_silence_endpoint(fake_model, unit_table, feats_factory):
    opts = DecodeOptions(
        endpoint_config=CtcEndpointConfig(max_leading_silence_frames=20)
    )
    decoder = make_decoder(fake_model, unit_table, feats_factory([0] * 40), opts)

    assert decoder.decode() == DecodeState.END_BATCH
    assert decoder.decode() == DecodeState.ENDPOINT
    assert not decoder.decoded_something()
    best = decoder.best_result()
    assert best.sentence == ""
    assert best.score == NO_HYPOTHESIS_SCORE

    decoder.reset_continuous_decoding()
    assert decoder.endpointer.state == EndpointState.NOT_STARTED
    assert decoder.global_frame_offset == 32
    assert decoder.result == []

    assert decoder.decode() == DecodeState.END_FEATS
    decoder.rescoring()
    assert decoder.best_result().score == NO_HYPOTHESIS_SCORE
    assert decoder.num_frames == 39


class WeakBlankModel(FakeAsrModel):
    """FakeAsrModel whose first frame has blank only slightly ahead of the rest."""

    def forward_encoder_chunk(self, feats, cache, required_cache_size):
        encoder_out, ctc_logp, new_cache = super().forward_encoder_chunk(
            feats, cache, required_cache_size
        )
        if cache["offset"] == 0:
            logits = torch.zeros(self.vocab_size)
            logits[0] = 1.0
            ctc_logp = ctc_logp.clone()
            ctc_logp[0] = torch.log_softmax(logits, dim=-1)
        return encoder_out, ctc_logp, new_cache


def test_leading_silence_after_non_silent_frame(unit_table, feats_factory):
    opts = DecodeOptions(
        endpoint_config=CtcEndpointConfig(
            max_leading_silence_frames=50, max_trailing_silence_frames=25
        )
    )
    decoder = make_decoder(WeakBlankModel(), unit_table, feats_factory([0] * 80), opts)

    states = [decoder.decode() for _ in range(4)]
    assert not decoder.decoded_something()
    # nothing was decoded, so the leading limit applies, not the trailing one
    assert states == [DecodeState.END_BATCH] * 3 + [DecodeState.ENDPOINT]
    assert decoder.endpointer.endpoint_frame == 50
    assert decoder.endpointer.state == EndpointState.ENDPOINT


def test_continuous_decoding(fake_model, unit_table, feats_factory):
    units = [0, 1, 0, 2] + [0] * 30 + [0, 3, 0, 4, 0]
    decoder = make_decoder(fake_model, unit_table, feats_factory(units))

    states = []
    results = []
    while True:
        state = decoder.decode()
        states.append(state)
        if state in (DecodeState.ENDPOINT, DecodeState.END_FEATS):
            decoder.rescoring()
            if decoder.decoded_something():
                results.append(decoder.best_result())
            if state == DecodeState.END_FEATS:
                break
            decoder.reset_continuous_decoding()

    assert states == [DecodeState.END_BATCH, DecodeState.ENDPOINT, DecodeState.END_FEATS]
    assert [r.sentence for r in results] == ["hello", "world"]
    assert results[0].word_pieces == [WordPiece("hello", 1, 4)]
    # time stamps of the second utterance count from the start of the input
    assert results[1].word_pieces == [WordPiece("world", 35, 38)]


def test_short_input_is_skipped(fake_model, unit_table):
    decoder = make_decoder(fake_model, unit_table, torch.zeros(5, 80))
    assert decode_all(decoder) == [DecodeState.END_FEATS]
    assert decoder.num_frames == 0
    assert not decoder.decoded_something()
    assert decoder.best_result().score == NO_HYPOTHESIS_SCORE


def test_sessions_are_independent(fake_model, unit_table, feats_factory):
    inputs = [
        HELLO_WORLD,
        LONG_UTTERANCE,
        [0, 5, 0, 6, 0],
        [0, 3, 3, 4, 0, 1, 2, 0],
    ]
    opts = DecodeOptions(chunk_size=2)
    resource = DecodeResource(model=fake_model, unit_table=unit_table)

    def run(units):
        pipeline = FeaturePipeline()
        pipeline.accept_features(feats_factory(units))
        pipeline.set_input_finished()
        decoder = AsrDecoder(pipeline, resource, opts)
        decode_all(decoder)
        return decoder.best_result()

    expected = [run(units) for units in inputs]

    outputs = [None] * len(inputs)

    def worker(i):
        outputs[i] = run(inputs[i])

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(len(inputs))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for got, ref in zip(outputs, expected):
        assert got.sentence == ref.sentence
        assert got.tokens == ref.tokens
        assert got.score == pytest.approx(ref.score)
    assert outputs[2].sentence == "你好"


def test_wfst_decoder(fake_model, unit_table, feats_factory):
    fst = WeightedFst(
        [
            (0, Arc(1, 1, 0.0, 1)),
            (1, Arc(2, 0, 0.0, 2)),
            (2, Arc(0, 0, 0.0, 0)),
            (0, Arc(3, 2, 0.0, 3)),
            (3, Arc(4, 0, 0.0, 4)),
            (4, Arc(0, 0, 0.0, 0)),
        ],
        {0: 0.0},
    )
    symbol_table = SymbolTable(["<eps>", "hello", "world"])
    decoder = make_decoder(
        fake_model,
        unit_table,
        feats_factory(HELLO_WORLD),
        fst=fst,
        symbol_table=symbol_table,
    )
    decode_all(decoder)
    best = decoder.best_result()
    assert best.sentence == "hello world"
    assert best.tokens == (1, 2, 3, 4)
    assert best.word_pieces == [WordPiece("hello", 1, 4), WordPiece("world", 6, 8)]


def test_wfst_without_symbol_table(fake_model, unit_table):
    fst = WeightedFst([], {0: 0.0})
    with pytest.raises(ValueError):
        make_decoder(fake_model, unit_table, fst=fst)


@pytest.mark.parametrize("reverse_weight", [-0.1, 1.5])
def test_invalid_reverse_weight(model_factory, unit_table, reverse_weight):
    model = model_factory(bidirectional=True)
    with pytest.raises(ValueError):
        make_decoder(model, unit_table, opts=DecodeOptions(reverse_weight=reverse_weight))


def test_reverse_weight_needs_bidirectional_decoder(fake_model, unit_table):
    with pytest.raises(ValueError):
        make_decoder(fake_model, unit_table, opts=DecodeOptions(reverse_weight=0.3))


def test_frame_shift(fake_model, unit_table):
    decoder = make_decoder(fake_model, unit_table)
    assert decoder.feature_frame_shift_in_ms == 10
    assert decoder.frame_shift_in_ms == 40


def test_reset(fake_model, unit_table, feats_factory):
    feats = feats_factory(HELLO_WORLD)
    opts = replace(DecodeOptions(), chunk_size=4)
    decoder = make_decoder(fake_model, unit_table, feats, opts)
    decode_all(decoder)
    first = decoder.best_result()

    decoder.reset()
    assert decoder.num_frames == 0
    assert decoder.result == []
    assert not decoder.feature_pipeline.input_finished
    assert decoder.feature_pipeline.num_queued_frames == 0

    decoder.feature_pipeline.accept_features(feats)
    decoder.feature_pipeline.set_input_finished()
    decode_all(decoder)
    second = decoder.best_result()
    assert second.sentence == first.sentence
    assert second.score == pytest.approx(first.score)
    assert second.word_pieces == first.word_pieces
