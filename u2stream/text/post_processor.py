import re

from typeguard import typechecked

_CJK = (
    "\u3400-\u4dbf"  # CJK extension A
    "\u4e00-\u9fff"  # CJK unified ideographs
    "\uf900-\ufaff"  # compatibility ideographs
    "\u3040-\u30ff"  # hiragana and katakana
    "\uac00-\ud7af"  # hangul syllables
)
_CJK_CHAR = re.compile(f"[{_CJK}]")
_SPACE_BETWEEN_CJK = re.compile(f"(?<=[{_CJK}]) +(?=[{_CJK}])")
_MULTI_SPACE = re.compile(r"\s+")


def is_cjk_char(char: str) -> bool:
    return len(char) == 1 and _CJK_CHAR.match(char) is not None


class PostProcessor:
    """Turn decoded unit text into display text.

    - Replace the word-boundary symbol of sentencepiece units by a space
    - Squeeze whitespace and drop spaces between CJK characters
    - Optionally lowercase

    Examples:
        >>> PostProcessor().process("▁HELLO▁WOR LD", finish=True)
        'hello wor ld'

    """

    @typechecked
    def __init__(
        self,
        space_symbol: str = "▁",
        lowercase: bool = True,
        remove_cjk_spaces: bool = True,
    ):
        self.space_symbol = space_symbol
        self.lowercase = lowercase
        self.remove_cjk_spaces = remove_cjk_spaces

    def process(self, text: str, finish: bool) -> str:
        """Normalize `text`.

        Partial results keep a trailing space so that the next chunk can be
        appended to them; final results are stripped on both sides.

        """
        text = text.replace(self.space_symbol, " ")
        text = _MULTI_SPACE.sub(" ", text)
        if self.remove_cjk_spaces:
            text = _SPACE_BETWEEN_CJK.sub("", text)
        if self.lowercase:
            text = text.lower()
        return text.strip() if finish else text.lstrip()

    def is_word_start(self, unit: str) -> bool:
        """Whether a model unit opens a new word."""
        return unit.startswith(self.space_symbol) or is_cjk_char(unit)
