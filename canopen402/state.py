"""Drive state machine: status word decoding and control word transitions."""

from __future__ import annotations

import logging
import threading
import time
from enum import IntEnum

_log = logging.getLogger(__name__)


class StatusWord(IntEnum):
    """Bit positions in the status word (object 0x6041)."""

    READY_TO_SWITCH_ON = 0
    SWITCHED_ON = 1
    OPERATION_ENABLED = 2
    FAULT = 3
    VOLTAGE_ENABLED = 4
    QUICK_STOP = 5
    SWITCH_ON_DISABLED = 6
    WARNING = 7
    MANUFACTURER_SPECIFIC0 = 8
    REMOTE = 9
    TARGET_REACHED = 10
    INTERNAL_LIMIT = 11
    OPERATION_MODE_SPECIFIC0 = 12
    OPERATION_MODE_SPECIFIC1 = 13
    MANUFACTURER_SPECIFIC1 = 14
    MANUFACTURER_SPECIFIC2 = 15


class ControlWord(IntEnum):
    """Bit positions in the control word (object 0x6040)."""

    SWITCH_ON = 0
    ENABLE_VOLTAGE = 1
    QUICK_STOP = 2
    ENABLE_OPERATION = 3
    OPERATION_MODE_SPECIFIC0 = 4
    OPERATION_MODE_SPECIFIC1 = 5
    OPERATION_MODE_SPECIFIC2 = 6
    FAULT_RESET = 7
    HALT = 8
    OPERATION_MODE_SPECIFIC3 = 9
    MANUFACTURER_SPECIFIC0 = 11
    MANUFACTURER_SPECIFIC1 = 12
    MANUFACTURER_SPECIFIC2 = 13
    MANUFACTURER_SPECIFIC3 = 14
    MANUFACTURER_SPECIFIC4 = 15


class InternalState(IntEnum):
    """States of the drive state machine. START is the same value as UNKNOWN."""

    UNKNOWN = 0
    START = 0
    NOT_READY_TO_SWITCH_ON = 1
    SWITCH_ON_DISABLED = 2
    READY_TO_SWITCH_ON = 3
    SWITCHED_ON = 4
    OPERATION_ENABLE = 5
    QUICK_STOP_ACTIVE = 6
    FAULT_REACTION_ACTIVE = 7
    FAULT = 8


class IllegalTransition(ValueError):
    """Raised when no control word command leads from one state to another."""

    def __init__(self, from_state: int, to_state: int) -> None:
        super().__init__(f"illegal transition {int(from_state)} -> {int(to_state)}")
        self.from_state = from_state
        self.to_state = to_state


def _bits(*positions: int) -> int:
    value = 0
    for pos in positions:
        value |= 1 << pos
    return value


_R = _bits(StatusWord.READY_TO_SWITCH_ON)
_S = _bits(StatusWord.SWITCHED_ON)
_O = _bits(StatusWord.OPERATION_ENABLED)
_F = _bits(StatusWord.FAULT)
_Q = _bits(StatusWord.QUICK_STOP)
_D = _bits(StatusWord.SWITCH_ON_DISABLED)
_STATE_MASK = _D | _Q | _F | _O | _S | _R

_DECODE = {
    0: InternalState.NOT_READY_TO_SWITCH_ON,
    _Q: InternalState.NOT_READY_TO_SWITCH_ON,
    _D: InternalState.SWITCH_ON_DISABLED,
    _D | _Q: InternalState.SWITCH_ON_DISABLED,
    _Q | _R: InternalState.READY_TO_SWITCH_ON,
    _Q | _S | _R: InternalState.SWITCHED_ON,
    _Q | _O | _S | _R: InternalState.OPERATION_ENABLE,
    _O | _S | _R: InternalState.QUICK_STOP_ACTIVE,
    _F | _O | _S | _R: InternalState.FAULT_REACTION_ACTIVE,
    _Q | _F | _O | _S | _R: InternalState.FAULT_REACTION_ACTIVE,
    _F: InternalState.FAULT,
    _Q | _F: InternalState.FAULT,
}


def decode_status_word(sw: int) -> InternalState:
    """Map a status word to its drive state, UNKNOWN if the bits match none."""
    masked = sw & _STATE_MASK
    state = _DECODE.get(masked)
    if state is None:
        _log.warning("Motor is currently in an unknown state: %x", masked)
        return InternalState.UNKNOWN
    return state


class State402:
    """Thread-safe tracker of the drive state as reported by the status word."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._state = InternalState.UNKNOWN

    @property
    def state(self) -> InternalState:
        with self._cond:
            return self._state

    def read(self, sw: int) -> InternalState:
        """Update the state from a status word and wake any waiters on change."""
        new_state = decode_status_word(sw)
        with self._cond:
            if new_state != self._state:
                self._state = new_state
                self._cond.notify_all()
            return self._state

    def wait_for_new_state(
        self, deadline: float, state: InternalState
    ) -> tuple[bool, InternalState]:
        """Wait until the state differs from ``state`` or ``deadline`` passes.

        ``deadline`` is a ``time.monotonic()`` value. Returns whether the state
        changed and the current state.
        """
        with self._cond:
            while self._state == state:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not self._cond.wait(remaining):
                    break
            return self._state != state, self._state


_S_ON = ControlWord.SWITCH_ON
_EV = ControlWord.ENABLE_VOLTAGE
_QS = ControlWord.QUICK_STOP
_EO = ControlWord.ENABLE_OPERATION
_FR = ControlWord.FAULT_RESET


def _build_transitions() -> dict[tuple[InternalState, InternalState], tuple[int, int]]:
    s = InternalState
    disable_voltage = (0, _bits(_FR, _EV))
    automatic = (0, 0)
    shutdown = (_bits(_QS, _EV), _bits(_FR, _S_ON))
    switch_on = (_bits(_QS, _EV, _S_ON), _bits(_FR, _EO))
    enable_operation = (_bits(_QS, _EV, _S_ON, _EO), _bits(_FR))
    quickstop = (_bits(_EV), _bits(_FR, _QS))
    fault_reset = (_bits(_FR), 0)

    entries = [
        (s.READY_TO_SWITCH_ON, s.SWITCH_ON_DISABLED, disable_voltage),
        (s.OPERATION_ENABLE, s.SWITCH_ON_DISABLED, disable_voltage),
        (s.SWITCHED_ON, s.SWITCH_ON_DISABLED, disable_voltage),
        (s.QUICK_STOP_ACTIVE, s.SWITCH_ON_DISABLED, disable_voltage),
        (s.START, s.NOT_READY_TO_SWITCH_ON, automatic),
        (s.NOT_READY_TO_SWITCH_ON, s.SWITCH_ON_DISABLED, automatic),
        (s.FAULT_REACTION_ACTIVE, s.FAULT, automatic),
        (s.SWITCH_ON_DISABLED, s.READY_TO_SWITCH_ON, shutdown),
        (s.SWITCHED_ON, s.READY_TO_SWITCH_ON, shutdown),
        (s.OPERATION_ENABLE, s.READY_TO_SWITCH_ON, shutdown),
        (s.READY_TO_SWITCH_ON, s.SWITCHED_ON, switch_on),
        (s.OPERATION_ENABLE, s.SWITCHED_ON, switch_on),
        (s.SWITCHED_ON, s.OPERATION_ENABLE, enable_operation),
        (s.QUICK_STOP_ACTIVE, s.OPERATION_ENABLE, enable_operation),
        (s.READY_TO_SWITCH_ON, s.QUICK_STOP_ACTIVE, quickstop),
        (s.SWITCHED_ON, s.QUICK_STOP_ACTIVE, quickstop),
        (s.OPERATION_ENABLE, s.QUICK_STOP_ACTIVE, quickstop),
        (s.FAULT, s.SWITCH_ON_DISABLED, fault_reset),
    ]
    table: dict[tuple[InternalState, InternalState], tuple[int, int]] = {}
    for from_state, to_state, op in entries:
        table.setdefault((from_state, to_state), op)
    return table


_TRANSITIONS = _build_transitions()

_ENABLING_HOPS = {
    InternalState.START: InternalState.NOT_READY_TO_SWITCH_ON,
    InternalState.FAULT: InternalState.SWITCH_ON_DISABLED,
    InternalState.NOT_READY_TO_SWITCH_ON: InternalState.SWITCH_ON_DISABLED,
    InternalState.SWITCH_ON_DISABLED: InternalState.READY_TO_SWITCH_ON,
    InternalState.READY_TO_SWITCH_ON: InternalState.SWITCHED_ON,
    InternalState.SWITCHED_ON: InternalState.OPERATION_ENABLE,
    InternalState.QUICK_STOP_ACTIVE: InternalState.OPERATION_ENABLE,
    InternalState.OPERATION_ENABLE: InternalState.OPERATION_ENABLE,
    InternalState.FAULT_REACTION_ACTIVE: InternalState.FAULT,
}


def next_state_for_enabling(state: int) -> InternalState:
    """The next state on the way from ``state`` towards OPERATION_ENABLE."""
    try:
        return _ENABLING_HOPS[InternalState(state)]
    except (ValueError, KeyError):
        raise ValueError("state value is illegal") from None


def apply_transition(cw: int, from_state: int, to_state: int) -> int:
    """Return ``cw`` with the command bits for a single direct transition applied."""
    try:
        to_set, to_reset = _TRANSITIONS[(InternalState(from_state), InternalState(to_state))]
    except (ValueError, KeyError):
        raise IllegalTransition(from_state, to_state) from None
    return (cw & ~to_reset & 0xFFFF) | to_set


def set_transition(
    cw: int, from_state: int, to_state: int, with_next: bool = False
) -> tuple[int, InternalState]:
    """Command the drive from ``from_state`` towards ``to_state``.

    With ``with_next`` set, a target of OPERATION_ENABLE is reached step by
    step and the returned hop is the next intermediate state. Returns the new
    control word and the state that the command leads to.
    Raises IllegalTransition if no command exists.
    """
    if from_state == to_state:
        return cw, InternalState(to_state)
    hop = to_state
    if with_next and to_state == InternalState.OPERATION_ENABLE:
        try:
            hop = next_state_for_enabling(from_state)
        except ValueError:
            _log.warning("illegal transition %s -> %s", from_state, to_state)
            raise IllegalTransition(from_state, to_state) from None
    try:
        new_cw = apply_transition(cw, from_state, hop)
    except IllegalTransition:
        _log.warning("illegal transition %s -> %s", from_state, to_state)
        raise IllegalTransition(from_state, to_state) from None
    return new_cw, InternalState(hop)