"""Hypothesis and decoding result data types."""

from dataclasses import dataclass, field
from typing import List, NamedTuple, Tuple

# Score of a result that holds no hypothesis at all
NO_HYPOTHESIS_SCORE = -float("inf")


class Hypothesis(NamedTuple):
    """Hypothesis data type.

    `yseq` holds model unit ids with blanks and repeats collapsed; `times`
    holds the frame (relative to the start of the current utterance) at which
    each unit was emitted. `olabels` holds output symbol ids: the units
    themselves for prefix search, words for graph search.

    """

    yseq: Tuple[int, ...] = ()
    score: float = NO_HYPOTHESIS_SCORE
    times: Tuple[int, ...] = ()
    olabels: Tuple[int, ...] = ()


class WordPiece(NamedTuple):
    """A word with its [start, end) span in absolute model frames."""

    word: str
    start: int
    end: int


@dataclass
class DecodeResult:
    score: float = NO_HYPOTHESIS_SCORE
    sentence: str = ""
    word_pieces: List[WordPiece] = field(default_factory=list)
    tokens: Tuple[int, ...] = ()
