"""Per-certificate mint lifecycle."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .exceptions import InvalidTransition


class MintState(str, Enum):
    PENDING = "pending"
    ARTIFACT_UPLOADED = "artifact_uploaded"
    METADATA_BUILT = "metadata_built"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    CHECKPOINTED = "checkpointed"
    FAILED = "failed"


class MintEvent(str, Enum):
    ARTIFACT_UPLOADED = "artifact_uploaded"
    METADATA_BUILT = "metadata_built"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    CHECKPOINTED = "checkpointed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    FAILED = "failed"


TERMINAL_STATES = frozenset({MintState.CHECKPOINTED, MintState.FAILED})

_TRANSITIONS: Dict[Tuple[MintState, MintEvent], MintState] = {
    (MintState.PENDING, MintEvent.ARTIFACT_UPLOADED): MintState.ARTIFACT_UPLOADED,
    (MintState.ARTIFACT_UPLOADED, MintEvent.METADATA_BUILT): MintState.METADATA_BUILT,
    (MintState.METADATA_BUILT, MintEvent.SUBMITTED): MintState.SUBMITTED,
    (MintState.METADATA_BUILT, MintEvent.REJECTED): MintState.FAILED,
    (MintState.SUBMITTED, MintEvent.CONFIRMED): MintState.CONFIRMED,
    (MintState.SUBMITTED, MintEvent.TIMED_OUT): MintState.METADATA_BUILT,
    (MintState.SUBMITTED, MintEvent.REJECTED): MintState.FAILED,
    (MintState.CONFIRMED, MintEvent.CHECKPOINTED): MintState.CHECKPOINTED,
}
# Any non-terminal state may fail outright.
for _state in MintState:
    if _state not in TERMINAL_STATES:
        _TRANSITIONS[(_state, MintEvent.FAILED)] = MintState.FAILED


def transition(state: MintState, event: MintEvent) -> MintState:
    """Next state for ``event`` in ``state``; raises InvalidTransition otherwise."""
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(state.value, event.value) from None


@dataclass
class CertificateMint:
    """Working state for one certificate during a run."""
    identifier: str
    content_hash: str
    gve_code: str
    state: MintState = MintState.PENDING
    artifact_url: Optional[str] = None
    token_uri: Optional[str] = None
    tx_hash: Optional[str] = None
    token_id: Optional[int] = None
    attempts: int = 0
    history: List[MintState] = field(default_factory=list)

    def apply(self, event: MintEvent) -> MintState:
        new_state = transition(self.state, event)
        self.history.append(self.state)
        if event == MintEvent.SUBMITTED:
            self.attempts += 1
        self.state = new_state
        return new_state

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
