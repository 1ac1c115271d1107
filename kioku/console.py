"""Rich consoles for CLI output.

Results go to stdout so they can be piped; errors and warnings go to stderr.
Color is dropped when ``NO_COLOR`` is set.
"""

import os
import sys

from rich.console import Console


def _color_disabled(no_color: bool) -> bool:
    return no_color or bool(os.environ.get("NO_COLOR"))


def get_stderr_console(no_color: bool = False) -> Console:
    """Console for errors and warnings."""
    return Console(file=sys.stderr, no_color=_color_disabled(no_color))


def get_stdout_console(no_color: bool = False) -> Console:
    """Console for command results (tables, panels, confirmations)."""
    return Console(no_color=_color_disabled(no_color))
