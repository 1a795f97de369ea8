from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Set


class Phase(str, enum.Enum):
    STARTED = "started"
    UPSTREAM_REQUESTED = "upstream_requested"
    STREAMING = "streaming"
    FALLBACK_NONSTREAM = "fallback_nonstream"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"
    CLOSED = "closed"


TERMINAL_PHASES = (Phase.COMPLETED, Phase.TIMED_OUT, Phase.ERRORED, Phase.CLOSED)


@dataclass
class StreamState:
    """Per-connection bookkeeping; lives exactly as long as one outgoing stream."""

    last_activity: float = 0.0
    accumulated_text: str = ""
    saw_first_text: bool = False
    tool_progress_announced: bool = False
    closed: bool = False
    phase: Phase = Phase.STARTED
    # (notice kind, call id) pairs already shown
    announced: Set[tuple] = field(default_factory=set)

    def advance(self, phase: Phase) -> bool:
        """Move to `phase`; once terminal, only CLOSED is accepted."""
        if self.phase == Phase.CLOSED:
            return False
        if self.phase in TERMINAL_PHASES and phase != Phase.CLOSED:
            return False
        self.phase = phase
        return True
