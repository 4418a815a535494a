# ipsec_manager/ipsec/states.py
"""
Tunnel Lifecycle State Machine

    down -> connecting -> established
    established -> rekeying -> established
    any -> error
    error -> connecting              (watchdog restart)
    established|connecting|error -> down   (stop / delete)

'down' is the initial state and also a resumable one: the config is
loaded but the connection is inactive.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from ..errors import InvalidTransition

logger = logging.getLogger('ipsec-agent.states')


class TunnelState(str, Enum):
    """Lifecycle state of one tunnel"""
    DOWN = "down"
    CONNECTING = "connecting"
    ESTABLISHED = "established"
    REKEYING = "rekeying"
    ERROR = "error"

    @classmethod
    def parse(cls, value) -> "TunnelState":
        """
        Map a backend-reported state to a TunnelState

        Unknown values are a contract violation; they are reported as
        ERROR rather than raised so a misbehaving backend cannot crash
        the agent loops.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.warning(f"Backend reported undefined tunnel state {value!r}, treating as error")
            return cls.ERROR


TRANSITIONS: Dict[TunnelState, FrozenSet[TunnelState]] = {
    TunnelState.DOWN: frozenset({TunnelState.CONNECTING, TunnelState.ERROR}),
    TunnelState.CONNECTING: frozenset({TunnelState.ESTABLISHED, TunnelState.ERROR, TunnelState.DOWN}),
    TunnelState.ESTABLISHED: frozenset({TunnelState.REKEYING, TunnelState.ERROR, TunnelState.DOWN}),
    TunnelState.REKEYING: frozenset({TunnelState.ESTABLISHED, TunnelState.ERROR}),
    TunnelState.ERROR: frozenset({TunnelState.CONNECTING, TunnelState.DOWN}),
}


def is_allowed(source: TunnelState, target: TunnelState) -> bool:
    """True if source -> target is an edge of the lifecycle"""
    return target in TRANSITIONS[source]


def check_transition(tunnel: str, source: TunnelState, target: TunnelState) -> None:
    if not is_allowed(source, target):
        raise InvalidTransition(tunnel, source, target)


class TunnelLifecycle:
    """
    Tracks the state of one tunnel and the transitions it went through

    Backends call transition() for every state change; an edge outside
    TRANSITIONS raises InvalidTransition and leaves the state untouched.
    """

    def __init__(
        self,
        name: str,
        state: TunnelState = TunnelState.DOWN,
        on_transition: Optional[Callable[[str, TunnelState, TunnelState], None]] = None,
    ):
        self.name = name
        self.state = state
        self.changed_at = datetime.now(timezone.utc)
        self.history: List[Tuple[TunnelState, TunnelState]] = []
        self._on_transition = on_transition

    def transition(self, target: TunnelState) -> None:
        source = self.state
        check_transition(self.name, source, target)

        self.state = target
        self.changed_at = datetime.now(timezone.utc)
        self.history.append((source, target))
        logger.debug(f"Tunnel {self.name}: {source.value} -> {target.value}")

        if self._on_transition:
            self._on_transition(self.name, source, target)

    def can_transition(self, target: TunnelState) -> bool:
        return is_allowed(self.state, target)
