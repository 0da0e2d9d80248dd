"""Argument type converters for command line options."""

from typing import Optional

_TRUE_VALUES = ("y", "yes", "t", "true", "on", "1")
_FALSE_VALUES = ("n", "no", "f", "false", "off", "0")


def str2bool(value: str) -> bool:
    """Convert a yes/no style string to bool.

    Examples:
        >>> str2bool('true')
        True
        >>> str2bool('0')
        False

    """
    value = value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid truth value {value!r}")


def str_or_none(value: str) -> Optional[str]:
    """str_or_none.

    Examples:
        >>> import argparse
        >>> parser = argparse.ArgumentParser()
        >>> _ = parser.add_argument('--foo', type=str_or_none)
        >>> parser.parse_args(['--foo', 'aaa'])
        Namespace(foo='aaa')
        >>> parser.parse_args(['--foo', 'none'])
        Namespace(foo=None)

    """
    if value.strip().lower() in ("none", "null", "nil"):
        return None
    return value


def positive_int(value: str) -> int:
    """Parse an integer that must be at least one (thread counts, beam sizes)."""
    ivalue = int(value)
    if ivalue < 1:
        raise ValueError(f"must be a positive integer: {value}")
    return ivalue
