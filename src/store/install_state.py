"""
Install State Machine

Tracks one install through its phases and rejects out-of-order moves.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, Set

from common.exceptions import StateTransitionError

logger = logging.getLogger(__name__)


class InstallState(Enum):
    """Phases of the install pipeline."""
    IDLE = "idle"
    GROUP_CHECK = "group_check"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    LOCATING = "locating"
    CONFIGURING = "configuring"
    PERSISTING = "persisting"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({InstallState.DONE, InstallState.CANCELLED, InstallState.FAILED})

_ABORT = {InstallState.CANCELLED, InstallState.FAILED}

# Format: {current_state: {allowed next states}}
VALID_TRANSITIONS: Dict[InstallState, Set[InstallState]] = {
    InstallState.IDLE: {InstallState.GROUP_CHECK} | _ABORT,
    InstallState.GROUP_CHECK: {InstallState.DOWNLOADING} | _ABORT,
    InstallState.DOWNLOADING: {InstallState.EXTRACTING} | _ABORT,
    InstallState.EXTRACTING: {InstallState.LOCATING} | _ABORT,
    InstallState.LOCATING: {InstallState.CONFIGURING} | _ABORT,
    InstallState.CONFIGURING: {InstallState.PERSISTING} | _ABORT,
    InstallState.PERSISTING: {InstallState.DONE} | _ABORT,
}


class InstallStateMachine:
    """
    State of one in-flight install.

    Terminal states accept no further transitions.
    """

    def __init__(self, app_id: str, initial_state: InstallState = InstallState.IDLE):
        self.app_id = app_id
        self._state = initial_state
        self._history: List[InstallState] = [initial_state]

    @property
    def state(self) -> InstallState:
        return self._state

    @property
    def history(self) -> List[InstallState]:
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def can_transition(self, target: InstallState) -> bool:
        return target in VALID_TRANSITIONS.get(self._state, set())

    def transition(self, target: InstallState) -> InstallState:
        """
        Move to the next phase.

        Raises:
            StateTransitionError: If target is not reachable from the current state.
        """
        if not self.can_transition(target):
            raise StateTransitionError(self.app_id, self._state.name, target.name)

        old_state = self._state
        self._state = target
        self._history.append(target)
        logger.debug(f"Install {self.app_id}: {old_state.name} -> {target.name}")

        return target
