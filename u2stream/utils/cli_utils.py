import shlex
import sys


def get_commandline_args() -> str:
    """Return the current command line, quoted so that it can be pasted to a shell."""
    return " ".join([sys.executable] + [shlex.quote(arg) for arg in sys.argv])
