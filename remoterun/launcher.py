"""Interpreter resolution for the commands the responder runs."""

from __future__ import annotations

import logging
import shutil
import sys
from typing import Callable, List, Optional, Sequence

logger = logging.getLogger("remoterun.launcher")

CANDIDATE_INTERPRETERS = ("python3", "python")
DEFAULT_FLAGS = ("-u",)

Which = Callable[[str], Optional[str]]


def find_interpreter(which: Which = shutil.which) -> str:
    """Return the first Python interpreter found on PATH, else the running one."""
    for candidate in CANDIDATE_INTERPRETERS:
        if which(candidate):
            return candidate
    logger.debug("No python on PATH; using %s", sys.executable)
    return sys.executable


def resolve_launcher(
    interpreter: str = "",
    flags: Sequence[str] = DEFAULT_FLAGS,
    which: Which = shutil.which,
) -> List[str]:
    """Build the executable + argument prefix used to run a target file."""
    executable = interpreter.strip() or find_interpreter(which)
    return [executable, *flags]


__all__ = ["CANDIDATE_INTERPRETERS", "DEFAULT_FLAGS", "find_interpreter", "resolve_launcher"]
