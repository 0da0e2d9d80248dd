from pathlib import Path
from typing import Dict, Iterable, List, Union

from typeguard import typechecked


class SymbolTable:
    """Bidirectional mapping between symbols and integer ids.

    The file format is one `<symbol> <id>` pair per line, as written for unit
    tables (`units.txt`) and word tables (`words.txt`). Lines that only hold a
    symbol get their line number as id, which also accepts a plain token list.

    Examples:
        >>> table = SymbolTable(["<blank>", "a", "b"])
        >>> table.find(1)
        'a'
        >>> table.find_id("b")
        2

    """

    @typechecked
    def __init__(self, symbols: Union[Path, str, Iterable[str]]):
        self.id2symbol: Dict[int, str] = {}
        self.symbol2id: Dict[str, int] = {}

        if isinstance(symbols, (Path, str)):
            path = Path(symbols)
            self.repr = str(path)
            with path.open("r", encoding="utf-8") as f:
                for lineno, line in enumerate(f):
                    line = line.rstrip("\n")
                    if len(line.strip()) == 0:
                        continue
                    fields = line.split()
                    if len(fields) == 1:
                        self._add(fields[0], lineno)
                    elif len(fields) == 2:
                        try:
                            idx = int(fields[1])
                        except ValueError:
                            raise RuntimeError(
                                f"{path}:{lineno + 1}: id is not an integer: {line}"
                            )
                        self._add(fields[0], idx)
                    else:
                        raise RuntimeError(
                            f"{path}:{lineno + 1}: expected '<symbol> <id>': {line}"
                        )
        else:
            for idx, sym in enumerate(symbols):
                self._add(sym, idx)
            head = ", ".join(self.id2symbol[i] for i in sorted(self.id2symbol)[:3])
            self.repr = f"{head}, ... (NSymbols={len(self.id2symbol)})"

    def _add(self, symbol: str, idx: int):
        if symbol in self.symbol2id:
            raise RuntimeError(f'Symbol "{symbol}" is duplicated')
        if idx in self.id2symbol:
            raise RuntimeError(f"Id {idx} is duplicated")
        self.symbol2id[symbol] = idx
        self.id2symbol[idx] = symbol

    def __len__(self) -> int:
        return len(self.id2symbol)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self.symbol2id

    def __repr__(self):
        return f"{self.__class__.__name__}({self.repr})"

    def find(self, idx: int) -> str:
        return self.id2symbol[idx]

    def find_id(self, symbol: str) -> int:
        return self.symbol2id[symbol]

    def ids2symbols(self, ids: Iterable[int]) -> List[str]:
        return [self.id2symbol[i] for i in ids]
