"""Read-only weighted finite-state transducer used by graph search."""

import logging
import math
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Tuple, Union

from typeguard import typechecked

EPSILON = 0


class Arc(NamedTuple):
    ilabel: int
    olabel: int
    weight: float
    nextstate: int


class WeightedFst:
    """Tropical-semiring transducer over model units.

    Input labels are unit ids (0 is epsilon) and output labels are word ids
    (0 is epsilon). Weights are costs, i.e. negated log-probabilities.
    Instances are frozen after construction and may be shared by threads.

    """

    @typechecked
    def __init__(
        self,
        arcs: Iterable[Tuple[int, Arc]],
        finals: Dict[int, float],
        start: int = 0,
    ):
        table: Dict[int, List[Arc]] = defaultdict(list)
        num_states = start + 1
        for src, arc in arcs:
            table[src].append(arc)
            num_states = max(num_states, src + 1, arc.nextstate + 1)
        for state in finals:
            num_states = max(num_states, state + 1)
        self._arcs: Dict[int, Tuple[Arc, ...]] = {k: tuple(v) for k, v in table.items()}
        self._finals = dict(finals)
        self.start = start
        self.num_states = num_states

    def arcs(self, state: int) -> Tuple[Arc, ...]:
        return self._arcs.get(state, ())

    def final(self, state: int) -> float:
        """Final cost of `state`; infinity if it is not final."""
        return self._finals.get(state, math.inf)

    def is_final(self, state: int) -> bool:
        return state in self._finals

    @classmethod
    @typechecked
    def from_text(cls, path: Union[Path, str]) -> "WeightedFst":
        """Load the AT&T text format printed by `fstprint` without symbol tables.

        Arc lines are `src dst ilabel olabel [weight]` and final lines are
        `state [weight]`. The source state of the first arc line is the start.

        """
        path = Path(path)
        arcs = []
        finals = {}
        start = None
        with path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                fields = line.split()
                if len(fields) == 0:
                    continue
                try:
                    if len(fields) in (4, 5):
                        src, dst, ilabel, olabel = (int(x) for x in fields[:4])
                        weight = float(fields[4]) if len(fields) == 5 else 0.0
                        if start is None:
                            start = src
                        arcs.append((src, Arc(ilabel, olabel, weight, dst)))
                    elif len(fields) in (1, 2):
                        state = int(fields[0])
                        finals[state] = float(fields[1]) if len(fields) == 2 else 0.0
                        if start is None:
                            start = state
                    else:
                        raise ValueError(f"unexpected number of fields: {len(fields)}")
                except ValueError as e:
                    raise RuntimeError(f"{path}:{lineno}: malformed fst line: {e}")
        if start is None:
            raise RuntimeError(f"{path}: empty fst")
        fst = cls(arcs, finals, start=start)
        logging.info(
            f"Loaded fst from {path}: {fst.num_states} states, {len(arcs)} arcs"
        )
        return fst
