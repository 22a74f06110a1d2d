"""Operator confirmation for destructive actions."""

from __future__ import annotations

import sys

from winvm.constants import ASSUME_ANSWER, FALSY, TRUTHY
from winvm.utils import has_controlling_tty, log


class Confirmer:
    """Answers yes/no questions before destructive workspace changes."""

    def __call__(self, prompt: str, default: bool = True) -> bool:
        raise NotImplementedError


class InteractiveConfirmer(Confirmer):
    """Ask on the terminal; without one, take the default answer."""

    def __call__(self, prompt: str, default: bool = True) -> bool:
        if not has_controlling_tty():
            log("INFO", f"{prompt} -> {'yes' if default else 'no'} (no TTY, using default)")
            return default
        prompt += " [Y/n] " if default else " [y/N] "
        sys.stderr.write(prompt)
        sys.stderr.flush()
        try:
            answer = input().strip().lower()
        except EOFError:
            return default
        if answer.startswith("y"):
            return True
        elif answer.startswith("n"):
            return False
        else:
            return default


class FixedConfirmer(Confirmer):
    """Always gives the same pre-decided answer."""

    def __init__(self, answer: bool) -> None:
        self.answer = answer

    def __call__(self, prompt: str, default: bool = True) -> bool:
        log("INFO", f"{prompt} -> {'yes' if self.answer else 'no'}")
        return self.answer


ASSUME_YES = FixedConfirmer(True)
ASSUME_NO = FixedConfirmer(False)


def default_confirmer() -> Confirmer:
    """Pick a confirmer from WINVM_ASSUME, falling back to the terminal."""
    if ASSUME_ANSWER in TRUTHY:
        return ASSUME_YES
    if ASSUME_ANSWER in FALSY:
        return ASSUME_NO
    return InteractiveConfirmer()
