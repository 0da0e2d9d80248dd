"""Thread-safe queue of fbank frames fed by a waveform producer."""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Union

import numpy as np
import torch
import torchaudio.compliance.kaldi as ta_kaldi


@dataclass(frozen=True)
class FeaturePipelineConfig:
    num_bins: int = 80
    sample_rate: int = 16000
    # window length and hop in samples
    frame_length: int = 400
    frame_shift: int = 160
    dither: float = 0.0


class FeaturePipeline:
    """Turn incoming audio into fbank frames and hand them to one decoder.

    A producer calls `accept_waveform` (or `accept_features`) any number of
    times and then `set_input_finished`; the decoder pulls frames with
    `read`. Samples that do not fill a whole frame yet are carried over to
    the next `accept_waveform` call. Waveforms are expected in 16-bit sample
    scale.

    """

    def __init__(self, config: FeaturePipelineConfig = FeaturePipelineConfig()):
        self.config = config
        self._cond = threading.Condition()
        self._frames: Deque[torch.Tensor] = deque()
        self._remainder = torch.zeros(0)
        self._input_finished = False
        self.num_frames = 0

    @property
    def feature_dim(self) -> int:
        return self.config.num_bins

    @property
    def input_finished(self) -> bool:
        with self._cond:
            return self._input_finished

    @property
    def num_queued_frames(self) -> int:
        with self._cond:
            return len(self._frames)

    def _fbank(self, waveform: torch.Tensor) -> torch.Tensor:
        conf = self.config
        return ta_kaldi.fbank(
            waveform.unsqueeze(0),
            num_mel_bins=conf.num_bins,
            frame_length=conf.frame_length * 1000 / conf.sample_rate,
            frame_shift=conf.frame_shift * 1000 / conf.sample_rate,
            dither=conf.dither,
            energy_floor=0.0,
            sample_frequency=conf.sample_rate,
        )

    def accept_waveform(self, waveform: Union[np.ndarray, torch.Tensor]) -> None:
        """Append samples (N,) and queue every complete frame."""
        if isinstance(waveform, np.ndarray):
            waveform = torch.from_numpy(waveform.astype(np.float32))
        assert waveform.dim() == 1, f"expected (N,) samples, got {tuple(waveform.shape)}"
        if self.input_finished:
            raise RuntimeError("accept_waveform() called after set_input_finished()")

        samples = torch.cat([self._remainder, waveform.float()])
        conf = self.config
        if samples.size(0) < conf.frame_length:
            self._remainder = samples
            return
        num_frames = 1 + (samples.size(0) - conf.frame_length) // conf.frame_shift
        used = (num_frames - 1) * conf.frame_shift + conf.frame_length
        feats = self._fbank(samples[:used])
        assert feats.size(0) == num_frames, f"{feats.size(0)} != {num_frames}"
        self._remainder = samples[num_frames * conf.frame_shift :]
        self.accept_features(feats)

    def accept_features(self, feats: torch.Tensor) -> None:
        """Queue already computed frames (T, D)."""
        assert feats.dim() == 2 and feats.size(1) == self.feature_dim, (
            f"expected (T, {self.feature_dim}) features, got {tuple(feats.shape)}"
        )
        with self._cond:
            self._frames.extend(feats.unbind(0))
            self.num_frames += feats.size(0)
            self._cond.notify_all()

    def set_input_finished(self) -> None:
        with self._cond:
            self._input_finished = True
            self._cond.notify_all()
        logging.debug(f"Input finished after {self.num_frames} frames")

    def _pop(self, num_frames: int) -> torch.Tensor:
        num_frames = min(num_frames, len(self._frames))
        if num_frames == 0:
            return torch.zeros((0, self.feature_dim))
        return torch.stack([self._frames.popleft() for _ in range(num_frames)])

    def read(self, num_frames: int, block: bool = True) -> Optional[torch.Tensor]:
        """Pop up to `num_frames` frames.

        Returns exactly `num_frames` frames when enough are queued. Once the
        input is finished, the remaining (possibly zero) frames are returned.
        Otherwise waits for more frames, or returns None if `block` is False.

        """
        assert num_frames > 0, num_frames
        with self._cond:
            while len(self._frames) < num_frames and not self._input_finished:
                if not block:
                    return None
                self._cond.wait()
            return self._pop(num_frames)

    def read_all(self, block: bool = True) -> Optional[torch.Tensor]:
        """Pop every frame once the input is finished."""
        with self._cond:
            while not self._input_finished:
                if not block:
                    return None
                self._cond.wait()
            return self._pop(len(self._frames))

    def is_exhausted(self) -> bool:
        """Whether the input is finished and every frame has been read."""
        with self._cond:
            return self._input_finished and len(self._frames) == 0

    def reset(self) -> None:
        with self._cond:
            self._frames.clear()
            self._remainder = torch.zeros(0)
            self._input_finished = False
            self.num_frames = 0
