"""Exit status classification for crashed sessions."""

from __future__ import annotations

import enum
import signal
from dataclasses import dataclass


class ExitClassification(enum.StrEnum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class ExitStatus:
    classification: ExitClassification
    reason: str


_FATAL_SIGNALS = {signal.SIGSEGV, signal.SIGABRT, signal.SIGBUS, signal.SIGILL}

_PERMANENT_CODES = {
    2: "Misuse of shell command",
    126: "Command not executable",
    127: "Command not found",
    128: "Invalid exit argument",
}


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


def classify_exit(returncode: int | None) -> ExitStatus:
    """Classify a ``Popen.returncode``.

    Negative values mean the process was killed by that signal number;
    128+n is the shell convention for the same thing.
    """
    if returncode is None:
        return ExitStatus(ExitClassification.RETRYABLE, "Unknown termination")

    if returncode == 0:
        return ExitStatus(ExitClassification.SUCCESS, "Normal termination")

    if returncode < 0:
        signum = -returncode
        name = _signal_name(signum)
        if signum in _FATAL_SIGNALS:
            return ExitStatus(ExitClassification.PERMANENT, f"Fatal signal: {name}")
        return ExitStatus(ExitClassification.RETRYABLE, f"Killed by {name}")

    if returncode in _PERMANENT_CODES:
        reason = f"{_PERMANENT_CODES[returncode]} (exit code {returncode})"
        return ExitStatus(ExitClassification.PERMANENT, reason)

    if 129 <= returncode <= 192:
        name = _signal_name(returncode - 128)
        return ExitStatus(
            ExitClassification.RETRYABLE,
            f"Terminated by {name} (exit code {returncode})",
        )

    return ExitStatus(ExitClassification.RETRYABLE, f"Exit code {returncode}")
