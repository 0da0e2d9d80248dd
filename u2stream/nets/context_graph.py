"""Contextual biasing graph over model units."""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from typeguard import typechecked

from u2stream.text.symbol_table import SymbolTable


class ContextGraph:
    """Trie of biased unit sequences.

    Each unit that extends a partial match adds `context_score`. When the
    next unit leaves the trie the bonus collected since the last completed
    phrase is cancelled and the match restarts from the root. Completing a
    phrase keeps its bonus. When no longer phrase extends it, the match
    returns to the root, so the same phrase can be matched again.

    State 0 is the root. The graph is never modified after construction and
    can be shared by concurrent searches.

    Examples:
        >>> graph = ContextGraph([[3, 4]], context_score=2.0)
        >>> graph.get_next_state(0, 3)
        (2.0, 1)
        >>> graph.get_next_state(1, 4)
        (2.0, 0)

    """

    @typechecked
    def __init__(self, phrases: Iterable[Sequence[int]], context_score: float = 3.0):
        self.context_score = context_score
        self._children: List[Dict[int, int]] = [{}]
        self._depth: List[int] = [0]
        self._is_end: List[bool] = [False]
        self.num_phrases = 0
        for phrase in phrases:
            if len(phrase) == 0:
                continue
            self._add(phrase)
            self.num_phrases += 1

        # depth of the deepest completed phrase on the path to each state;
        # children always have larger ids than their parent
        self._committed_depth: List[int] = [0] * self.num_states
        for state, children in enumerate(self._children):
            for nxt in children.values():
                if self._is_end[nxt]:
                    self._committed_depth[nxt] = self._depth[nxt]
                else:
                    self._committed_depth[nxt] = self._committed_depth[state]

    def _add(self, phrase: Sequence[int]):
        state = 0
        for unit in phrase:
            nxt = self._children[state].get(unit)
            if nxt is None:
                nxt = len(self._children)
                self._children.append({})
                self._depth.append(self._depth[state] + 1)
                self._is_end.append(False)
                self._children[state][unit] = nxt
            state = nxt
        self._is_end[state] = True

    @property
    def num_states(self) -> int:
        return len(self._children)

    def get_next_state(self, state: int, unit: int) -> Tuple[float, int]:
        """Consume `unit` from `state`.

        Returns:
            Tuple[float, int]: Score delta and the next state

        """
        delta = 0.0
        nxt = self._children[state].get(unit)
        if nxt is None:
            # cancel the unfinished part of the match, then retry from the root
            pending = self._depth[state] - self._committed_depth[state]
            delta -= pending * self.context_score
            nxt = self._children[0].get(unit)
            if nxt is None:
                return delta, 0
        delta += self.context_score
        if self._is_end[nxt] and len(self._children[nxt]) == 0:
            return delta, 0
        return delta, nxt

    @classmethod
    @typechecked
    def from_file(
        cls,
        path: Union[Path, str],
        unit_table: SymbolTable,
        context_score: float = 3.0,
        space_symbol: str = "▁",
    ) -> "ContextGraph":
        """Build the graph from a text file with one phrase per line.

        Phrases are split into units by greedy longest match against
        `unit_table`; a word-initial piece may carry `space_symbol`.

        """
        phrases = []
        with Path(path).open("r", encoding="utf-8") as f:
            for line in f:
                phrase = line.strip()
                if len(phrase) == 0:
                    continue
                units = _split_phrase(phrase, unit_table, space_symbol)
                if units is None:
                    logging.warning(f"Skip context phrase with unknown units: {phrase}")
                    continue
                phrases.append(units)
        logging.info(f"Loaded {len(phrases)} context phrases from {path}")
        return cls(phrases, context_score=context_score)


def _split_phrase(
    phrase: str, unit_table: SymbolTable, space_symbol: str
) -> Optional[List[int]]:
    units = []
    for word in phrase.split():
        pos = 0
        while pos < len(word):
            for end in range(len(word), pos, -1):
                piece = word[pos:end]
                if pos == 0 and space_symbol + piece in unit_table:
                    units.append(unit_table.find_id(space_symbol + piece))
                    break
                if piece in unit_table:
                    units.append(unit_table.find_id(piece))
                    break
            else:
                return None
            pos = end
    return units
