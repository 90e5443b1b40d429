"""tmux session wrapper."""

from .bootstrap import BootstrapResult, ensure_tmux
from .session import AGENT_WINDOW, TERMINAL_WINDOW, TmuxSession, session_name_for

__all__ = [
    "AGENT_WINDOW",
    "BootstrapResult",
    "ensure_tmux",
    "session_name_for",
    "TERMINAL_WINDOW",
    "TmuxSession",
]
