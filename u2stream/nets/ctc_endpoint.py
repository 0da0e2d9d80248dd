"""Endpoint detection from CTC blank dominance."""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import torch


class EndpointState(Enum):
    NOT_STARTED = "not_started"
    SPEAKING = "speaking"
    ENDPOINT = "endpoint"


@dataclass(frozen=True)
class CtcEndpointConfig:
    """Thresholds of the endpoint detector, in model frames.

    A boundary fires on the frame where one of the counters reaches its limit:
    silence before anything was spoken, silence after speech, or the length of
    the whole utterance.

    """

    blank: int = 0
    # log-probability margin of blank over the best non-blank unit
    blank_margin: float = math.log(4.0)
    max_leading_silence_frames: int = 125
    max_trailing_silence_frames: int = 25
    max_utterance_frames: int = 500


class CtcEndpoint:
    """Silence/speech state machine: NOT_STARTED -> SPEAKING -> ENDPOINT.

    Frames are classified acoustically, but which silence limit applies
    depends on whether the search has decoded anything yet: the leading
    limit until then, the trailing limit afterwards. ENDPOINT is terminal
    until `reset()` is called.

    Examples:
        >>> detector = CtcEndpoint(CtcEndpointConfig(max_trailing_silence_frames=2))
        >>> [
        ...     detector.accept_frame(s, decoded_something=True).value
        ...     for s in (False, True, True)
        ... ]
        ['speaking', 'speaking', 'endpoint']

    """

    def __init__(self, config: CtcEndpointConfig = CtcEndpointConfig()):
        if min(
            config.max_leading_silence_frames,
            config.max_trailing_silence_frames,
            config.max_utterance_frames,
        ) < 1:
            raise ValueError(f"endpoint thresholds must be positive: {config}")
        self.config = config
        self.reset()

    def reset(self) -> None:
        self._state = EndpointState.NOT_STARTED
        self.num_frames = 0
        # frames since the last non-silent frame
        self.num_silence_frames = 0
        self.endpoint_frame: Optional[int] = None

    @property
    def state(self) -> EndpointState:
        return self._state

    @property
    def detected(self) -> bool:
        return self._state == EndpointState.ENDPOINT

    def is_silence(self, logp: torch.Tensor) -> bool:
        """Classify one frame of log-probabilities (V,)."""
        assert logp.dim() == 1, f"expected (V,) log-probs, got {tuple(logp.shape)}"
        blank = self.config.blank
        blank_logp = logp[blank].item()
        nonblank = torch.cat([logp[:blank], logp[blank + 1 :]])
        if nonblank.numel() == 0:
            return True
        return blank_logp > nonblank.max().item() + self.config.blank_margin

    def accept_frame(
        self, is_silence: bool, decoded_something: bool = False
    ) -> EndpointState:
        """Advance by one frame.

        Args:
            is_silence (bool): Acoustic classification of the frame
            decoded_something (bool): Whether the search has produced a
                non-empty hypothesis in the current utterance

        """
        if self._state == EndpointState.ENDPOINT:
            return self._state

        frame = self.num_frames
        self.num_frames += 1
        if is_silence:
            self.num_silence_frames += 1
        else:
            self.num_silence_frames = 0
        if decoded_something:
            self._state = EndpointState.SPEAKING

        if self._state == EndpointState.NOT_STARTED:
            fired = self.num_silence_frames >= self.config.max_leading_silence_frames
        else:
            fired = self.num_silence_frames >= self.config.max_trailing_silence_frames
        if fired or self.num_frames >= self.config.max_utterance_frames:
            self._state = EndpointState.ENDPOINT
            self.endpoint_frame = frame
            logging.debug(
                f"Endpoint at frame {frame} "
                f"(silence={self.num_silence_frames}, total={self.num_frames})"
            )
        return self._state

    def accept_log_probs(
        self, logp: torch.Tensor, decoded_something: bool = False
    ) -> EndpointState:
        """Feed the log-probabilities of a chunk (T, V) frame by frame."""
        assert logp.dim() == 2, f"expected (T, V) log-probs, got {tuple(logp.shape)}"
        for t in range(logp.size(0)):
            state = self.accept_frame(self.is_silence(logp[t]), decoded_something)
            if state == EndpointState.ENDPOINT:
                break
        return self._state
