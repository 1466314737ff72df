"""PTY process management: interactive agent sessions on pseudo-terminals.

Each session is one process in its own process group with graceful
(SIGTERM) then forceful (SIGKILL) shutdown. The manager records every
session in the shared registry so other agentspawn processes can see it.
"""

from agentspawn.pty.exit_status import ExitClassification, classify_exit
from agentspawn.pty.manager import SessionManager
from agentspawn.pty.session import Session, SessionHandle, pid_alive

__all__ = [
    "ExitClassification",
    "Session",
    "SessionHandle",
    "SessionManager",
    "classify_exit",
    "pid_alive",
]
