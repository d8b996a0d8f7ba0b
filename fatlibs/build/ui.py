# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Progress line shown while building.
"""
from __future__ import annotations

import os
import sys
import threading
from typing import Collection, Dict, Mapping, Sequence

from .download import CICD

# ANSI color codes for terminal output
GREEN = "\033[0;32m"
YELLOW = "\033[1;33m"
RED = "\033[0;31m"
GREY = "\033[0;90m"
END = "\033[0m"

USE_UNICODE = not os.environ.get("FATLIBS_ASCII")

if USE_UNICODE:
    SPINNER_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]
    SYMBOL_PENDING = "◯"
    SYMBOL_SUCCESS = "✓"
    SYMBOL_FAILED = "✗"
    SYMBOL_SKIPPED = "-"
else:
    SPINNER_FRAMES = ["|", "/", "-", "\\"]
    SYMBOL_PENDING = "o"
    SYMBOL_SUCCESS = "+"
    SYMBOL_FAILED = "X"
    SYMBOL_SKIPPED = "-"


class SpinnerState:
    """
    Tracks the animation frame of every running step.
    """

    def __init__(self) -> None:
        self._state: Dict[str, int] = {}
        self._lock = threading.Lock()

    def next(self, name: str) -> str:
        with self._lock:
            frame = self._state.get(name, 0)
            self._state[name] = frame + 1
        return SPINNER_FRAMES[frame % len(SPINNER_FRAMES)]


_spinner_state = SpinnerState()


def status_symbol(name: str, running: Collection[str], states: Mapping[str, str]) -> str:
    """
    The colored symbol of one step.

    :param name: The step name
    :type name: str
    :param running: The names of the running steps
    :type running: list
    :param states: The final state (``ok``, ``failed`` or ``skipped``) of finished steps
    :type states: dict
    """
    if name in running:
        return "{}{}".format(GREEN, _spinner_state.next(name))
    state = states.get(name)
    if state is None:
        return "{}{}".format(YELLOW, SYMBOL_PENDING)
    if state == "failed":
        return "{}{}".format(RED, SYMBOL_FAILED)
    if state == "skipped":
        return "{}{}".format(GREY, SYMBOL_SKIPPED)
    return "{}{}".format(GREEN, SYMBOL_SUCCESS)


def print_ui(
    names: Sequence[str], running: Collection[str], states: Mapping[str, str]
) -> None:
    """
    Prints the UI during the build process.

    :param names: Every step of the build, in order
    :type names: list
    :param running: The names of the running steps
    :type running: list
    :param states: The final state of finished steps
    :type states: dict
    """
    if CICD:
        sys.stdout.flush()
        return
    uiline = [" " + status_symbol(_, running, states) for _ in names]
    uiline.append("  " + END)
    sys.stdout.write("\r")
    sys.stdout.write("".join(uiline))
    sys.stdout.flush()
