#!/usr/bin/env python3
import argparse
import logging
import sys
import threading
import time
from concurrent import futures
from typing import List, Optional, TextIO, Tuple, Union

import numpy as np
import soundfile

from u2stream.asr.decoder import (
    AsrDecoder,
    DecodeOptions,
    DecodeResource,
    DecodeState,
)
from u2stream.asr.torchscript_asr_model import TorchScriptAsrModel
from u2stream.fileio.read_text import read_2columns_text
from u2stream.frontend.feature_pipeline import FeaturePipeline, FeaturePipelineConfig
from u2stream.fst.wfst import WeightedFst
from u2stream.nets.context_graph import ContextGraph
from u2stream.nets.ctc_endpoint import CtcEndpointConfig
from u2stream.nets.ctc_prefix_beam_search import CtcPrefixBeamSearchConfig
from u2stream.nets.ctc_wfst_beam_search import CtcWfstBeamSearchConfig
from u2stream.nets.hypothesis import DecodeResult
from u2stream.text.post_processor import PostProcessor
from u2stream.text.symbol_table import SymbolTable
from u2stream.utils import config_argparse
from u2stream.utils.build_dataclass import build_dataclass
from u2stream.utils.cli_utils import get_commandline_args
from u2stream.utils.types import positive_int, str2bool, str_or_none


class ResultWriter:
    """Lock-guarded sink shared by the decoding threads."""

    def __init__(self, fout: TextIO, output_nbest: bool = False):
        self.fout = fout
        self.output_nbest = output_nbest
        self.total_wave_ms = 0.0
        self.total_decode_ms = 0.0
        self._lock = threading.Lock()

    def write(
        self,
        utt: str,
        final_result: str,
        results: List[DecodeResult],
        wave_ms: float,
        decode_ms: float,
    ):
        with self._lock:
            if not self.output_nbest:
                self.fout.write(f"{utt} {final_result}\n")
            else:
                self.fout.write(f"wav {utt}\n")
                for result in results:
                    if len(result.sentence) == 0:
                        continue
                    self.fout.write(f"candidate {result.score} {result.sentence}\n")
            self.fout.flush()
            self.total_wave_ms += wave_ms
            self.total_decode_ms += decode_ms


def read_wav(path: str, sample_rate: int) -> np.ndarray:
    """Read a wav file as float32 samples in 16-bit scale."""
    wav, rate = soundfile.read(path, dtype="int16")
    if rate != sample_rate:
        raise RuntimeError(f"{path}: sampling rate {rate} != {sample_rate}")
    if wav.ndim > 1:
        logging.warning(f"{path}: {wav.shape[1]} channels, using the first one")
        wav = wav[:, 0]
    return wav.astype(np.float32)


def decode_utterance(
    utt: str,
    wav_path: str,
    resource: DecodeResource,
    decode_opts: DecodeOptions,
    feature_config: FeaturePipelineConfig,
    writer: ResultWriter,
    continuous_decoding: bool = False,
    simulate_streaming: bool = False,
):
    wav = read_wav(wav_path, feature_config.sample_rate)
    feature_pipeline = FeaturePipeline(feature_config)
    feature_pipeline.accept_waveform(wav)
    feature_pipeline.set_input_finished()
    logging.info(f"{utt}: {feature_pipeline.num_frames} frames")

    decoder = AsrDecoder(feature_pipeline, resource, decode_opts)
    wave_ms = len(wav) / feature_config.sample_rate * 1000
    feature_shift_ms = feature_config.frame_shift / feature_config.sample_rate * 1000

    decode_ms = 0.0
    final_results = []
    while True:
        start = time.perf_counter()
        state = decoder.decode()
        if state == DecodeState.END_FEATS:
            decoder.rescoring()
        chunk_ms = (time.perf_counter() - start) * 1000
        decode_ms += chunk_ms
        if decoder.decoded_something():
            logging.info(f"{utt}: Partial result: {decoder.best_result().sentence}")

        if continuous_decoding and state == DecodeState.ENDPOINT:
            if decoder.decoded_something():
                decoder.rescoring()
                sentence = decoder.best_result().sentence
                logging.info(f"{utt}: Final result (continuous decoding): {sentence}")
                final_results.append(sentence)
            decoder.reset_continuous_decoding()

        if state == DecodeState.END_FEATS:
            break
        if decode_opts.chunk_size > 0 and simulate_streaming:
            wait_ms = decoder.num_frames_in_current_chunk * feature_shift_ms - chunk_ms
            if wait_ms > 0:
                logging.debug(f"Simulate streaming, waiting for {wait_ms:.1f}ms")
                time.sleep(wait_ms / 1000)

    if decoder.decoded_something():
        final_results.append(decoder.best_result().sentence)
    final_result = " ".join(final_results)
    logging.info(f"{utt}: Final result: {final_result}")
    logging.info(f"{utt}: Decoded {wave_ms:.0f}ms audio taken {decode_ms:.0f}ms")
    writer.write(utt, final_result, decoder.result, wave_ms, decode_ms)


def build_resource(
    model_path: str,
    unit_path: str,
    dict_path: Optional[str],
    fst_path: Optional[str],
    context_path: Optional[str],
    context_score: float,
    device: str,
    space_symbol: str,
    lowercase: bool,
    remove_cjk_spaces: bool,
) -> DecodeResource:
    unit_table = SymbolTable(unit_path)
    fst = None
    symbol_table = None
    if fst_path is not None:
        if dict_path is None:
            raise ValueError("--dict_path is required with --fst_path")
        fst = WeightedFst.from_text(fst_path)
        symbol_table = SymbolTable(dict_path)
    context_graph = None
    if context_path is not None:
        context_graph = ContextGraph.from_file(
            context_path, unit_table, context_score, space_symbol=space_symbol
        )
    return DecodeResource(
        model=TorchScriptAsrModel.from_file(model_path, device=device),
        unit_table=unit_table,
        symbol_table=symbol_table,
        fst=fst,
        context_graph=context_graph,
        post_processor=PostProcessor(
            space_symbol=space_symbol,
            lowercase=lowercase,
            remove_cjk_spaces=remove_cjk_spaces,
        ),
    )


def run_decoding(
    waves: List[Tuple[str, str]],
    resource: DecodeResource,
    decode_opts: DecodeOptions,
    feature_config: FeaturePipelineConfig,
    writer: ResultWriter,
    thread_num: int = 1,
    continuous_decoding: bool = False,
    simulate_streaming: bool = False,
):
    with futures.ThreadPoolExecutor(max_workers=thread_num) as executor:
        fs = [
            executor.submit(
                decode_utterance,
                utt,
                wav_path,
                resource,
                decode_opts,
                feature_config,
                writer,
                continuous_decoding,
                simulate_streaming,
            )
            for utt, wav_path in waves
        ]
        for future in futures.as_completed(fs):
            future.result()

    logging.info(
        f"Total: decoded {writer.total_wave_ms:.0f}ms audio taken "
        f"{writer.total_decode_ms:.0f}ms."
    )
    if writer.total_wave_ms > 0:
        logging.info(f"RTF: {writer.total_decode_ms / writer.total_wave_ms:.4f}")


def inference(args: argparse.Namespace):
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s (%(module)s:%(lineno)d) %(levelname)s: %(message)s",
    )

    if args.wav_path is not None:
        waves = [("test", args.wav_path)]
    else:
        waves = list(read_2columns_text(args.wav_scp).items())

    feature_config = build_dataclass(FeaturePipelineConfig, args)
    decode_opts = DecodeOptions(
        chunk_size=args.chunk_size,
        num_left_chunks=args.num_left_chunks,
        ctc_weight=args.ctc_weight,
        rescoring_weight=args.rescoring_weight,
        reverse_weight=args.reverse_weight,
        time_stamp_gap=args.time_stamp_gap,
        endpoint_config=build_dataclass(CtcEndpointConfig, args),
        prefix_search_config=build_dataclass(CtcPrefixBeamSearchConfig, args),
        wfst_search_config=build_dataclass(CtcWfstBeamSearchConfig, args),
    )
    resource = build_resource(
        model_path=args.model_path,
        unit_path=args.unit_path,
        dict_path=args.dict_path,
        fst_path=args.fst_path,
        context_path=args.context_path,
        context_score=args.context_score,
        device=args.device,
        space_symbol=args.space_symbol,
        lowercase=args.lowercase,
        remove_cjk_spaces=args.remove_cjk_spaces,
    )

    if args.result is not None:
        with open(args.result, "w", encoding="utf-8") as fout:
            _run(args, waves, resource, decode_opts, feature_config, fout)
    else:
        _run(args, waves, resource, decode_opts, feature_config, sys.stdout)


def _run(args, waves, resource, decode_opts, feature_config, fout: TextIO):
    run_decoding(
        waves,
        resource,
        decode_opts,
        feature_config,
        ResultWriter(fout, output_nbest=args.output_nbest),
        thread_num=args.thread_num,
        continuous_decoding=args.continuous_decoding,
        simulate_streaming=args.simulate_streaming,
    )


def get_parser():
    parser = config_argparse.ArgumentParser(
        description="Streaming CTC decoding with attention rescoring",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Note: Use '_' instead of '-' as separator.
    # '-' is confusing if written in yaml.
    parser.add_argument(
        "--log_level",
        type=lambda x: x.upper(),
        default="INFO",
        choices=("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"),
        help="The verbose level of logging",
    )
    parser.add_argument(
        "--thread_num",
        type=positive_int,
        default=1,
        help="The number of decoding threads",
    )
    parser.add_argument("--device", type=str, default="cpu", help="Torch device")

    group = parser.add_argument_group("Input data related")
    group.add_argument("--wav_path", type=str_or_none, help="Single wave path")
    group.add_argument(
        "--wav_scp", type=str_or_none, help="Input wav scp: '<utt> <path>' lines"
    )
    group.add_argument(
        "--result",
        type=str_or_none,
        help="Result output file. If not given, results are written to stdout",
    )
    group.add_argument(
        "--output_nbest",
        type=str2bool,
        default=False,
        help="Output every non-empty hypothesis of the final beam",
    )
    group.add_argument(
        "--continuous_decoding",
        type=str2bool,
        default=False,
        help="Split the input at detected endpoints",
    )
    group.add_argument(
        "--simulate_streaming",
        type=str2bool,
        default=False,
        help="Wait between chunks as if the audio arrived in real time",
    )

    group = parser.add_argument_group("The model configuration related")
    group.add_argument("--model_path", type=str, help="Exported TorchScript model")
    group.add_argument("--unit_path", type=str, help="Model unit table")
    group.add_argument(
        "--dict_path",
        type=str_or_none,
        help="Output word table of the decoding graph",
    )
    group.add_argument(
        "--fst_path",
        type=str_or_none,
        help="Decoding graph in OpenFst text format. "
        "If not given, prefix beam search is used",
    )
    group.add_argument(
        "--context_path",
        type=str_or_none,
        help="Context phrases to bias, one per line",
    )
    group.add_argument(
        "--context_score",
        type=float,
        default=3.0,
        help="Bonus of every unit that matches a context phrase",
    )

    group = parser.add_argument_group("Decoding related")
    group.add_argument(
        "--chunk_size",
        type=int,
        default=16,
        help="Encoder frames per chunk. <= 0 decodes the whole input at once",
    )
    group.add_argument(
        "--num_left_chunks",
        type=int,
        default=-1,
        help="Chunks of left context. Negative means unlimited",
    )
    group.add_argument("--ctc_weight", type=float, default=0.5)
    group.add_argument("--rescoring_weight", type=float, default=1.0)
    group.add_argument("--reverse_weight", type=float, default=0.0)
    group.add_argument(
        "--time_stamp_gap",
        type=int,
        default=100,
        help="Gap in encoder frames that always separates two words",
    )

    group = parser.add_argument_group("Beam-search related")
    group.add_argument("--blank", type=int, default=0, help="Blank unit id")
    group.add_argument("--first_beam_size", type=int, default=10)
    group.add_argument("--second_beam_size", type=int, default=10)

    group = parser.add_argument_group("Endpoint related")
    group.add_argument(
        "--blank_margin",
        type=float,
        default=CtcEndpointConfig.blank_margin,
        help="Log-probability margin of blank over the best non-blank unit "
        "for a frame to count as silence",
    )
    group.add_argument("--max_leading_silence_frames", type=int, default=125)
    group.add_argument("--max_trailing_silence_frames", type=int, default=25)
    group.add_argument("--max_utterance_frames", type=int, default=500)

    group = parser.add_argument_group("Feature extraction related")
    group.add_argument("--num_bins", type=int, default=80)
    group.add_argument("--sample_rate", type=int, default=16000)
    group.add_argument("--frame_length", type=int, default=400, help="In samples")
    group.add_argument("--frame_shift", type=int, default=160, help="In samples")
    group.add_argument("--dither", type=float, default=0.0)

    group = parser.add_argument_group("Text converter related")
    group.add_argument("--space_symbol", type=str, default="▁")
    group.add_argument("--lowercase", type=str2bool, default=True)
    group.add_argument("--remove_cjk_spaces", type=str2bool, default=True)

    return parser


def main(cmd: Optional[Union[List[str], Tuple[str, ...]]] = None):
    print(get_commandline_args(), file=sys.stderr)
    parser = get_parser()
    args = parser.parse_args(cmd)
    if args.wav_path is None and args.wav_scp is None:
        parser.error("Please provide the wave path or the wav scp")
    if args.model_path is None or args.unit_path is None:
        parser.error("--model_path and --unit_path are required")
    inference(args)


if __name__ == "__main__":
    main()
