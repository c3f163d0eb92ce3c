"""A drive that follows the device profile for drives and motion control."""

from __future__ import annotations

import logging
import threading
import time
from enum import IntEnum
from typing import Any, Callable, Mapping

from .entries import EntryNotValid, MemoryEntry, MemoryStorage
from .modes import (
    OP_MODE_MASK,
    CyclicSynchronousPositionMode,
    CyclicSynchronousTorqueMode,
    CyclicSynchronousVelocityMode,
    DefaultHomingMode,
    HomingMode,
    InterpolatedPositionMode,
    Mode,
    OperationMode,
    ProfiledPositionMode,
    ProfiledTorqueMode,
    ProfiledVelocityMode,
    VelocityMode,
    WordAccessor,
)
from .state import ControlWord, IllegalTransition, InternalState, State402, StatusWord, set_transition
from .status import LayerStatus, Level

_log = logging.getLogger(__name__)

_HALT_BIT = 1 << ControlWord.HALT
_FAULT_RESET_BIT = 1 << ControlWord.FAULT_RESET
_INTERNAL_LIMIT_BIT = 1 << StatusWord.INTERNAL_LIMIT
_WARNING_BIT = 1 << StatusWord.WARNING


class LayerState(IntEnum):
    """Lifecycle state of a layer, in the order a layer passes through them."""

    OFF = 0
    INIT = 1
    SHUTDOWN = 2
    ERROR = 3
    HALT = 4
    RECOVER = 5
    READY = 6


class Motor402:
    """Drives one motor: state machine, mode switching and the cyclic read/write."""

    MODE_SWITCH_TIMEOUT = 5.0
    POLL_INTERVAL = 0.02

    def __init__(
        self, name: str, storage: MemoryStorage, settings: Mapping[str, Any] | None = None
    ) -> None:
        settings = settings or {}
        self.name = name
        self._switching_state = InternalState(
            int(settings.get("switching_state", InternalState.OPERATION_ENABLE))
        )
        self._monitor_mode = bool(settings.get("monitor_mode", True))
        self._state_switch_timeout = float(settings.get("state_switch_timeout", 5))

        self._status_word = 0
        self._sw_lock = threading.Lock()
        self._control_word = 0
        self._cw_lock = threading.Lock()
        self._start_fault_reset = False
        self._target_state = InternalState.UNKNOWN

        self._state_handler = State402()

        self._map_lock = threading.Lock()
        self._modes: dict[int, Mode] = {}
        self._mode_allocators: dict[int, Callable[[], None]] = {}

        self._selected_mode: Mode | None = None
        self._mode_id: int | None = None
        self._mode_cond = threading.Condition()

        self._status_word_entry = storage.entry(0x6041)
        self._control_word_entry = storage.entry(0x6040)
        self._op_mode_display = storage.entry(0x6061)
        self._op_mode = storage.entry(0x6060)
        try:
            self._supported_drive_modes = storage.entry(0x6502)
        except EntryNotValid:
            self._supported_drive_modes = MemoryEntry(bound=False)

    # public interface

    def set_target(self, value: float) -> bool:
        """Hand a target to the active mode; only possible while operation is enabled."""
        if self._state_handler.state == InternalState.OPERATION_ENABLE:
            with self._mode_cond:
                return self._selected_mode is not None and self._selected_mode.set_target(value)
        return False

    def enter_mode_and_wait(self, mode: int) -> bool:
        """Switch to ``mode`` and wait until the drive reports it."""
        status = LayerStatus()
        okay = mode != OperationMode.HOMING and self._switch_mode(status, mode)
        if not status.bounded(Level.OK):
            _log.error("Could not switch to mode %s, reason: %s", mode, status.reason())
        return okay

    def is_mode_supported(self, mode: int) -> bool:
        """Whether ``mode`` can be entered directly (homing never can)."""
        return mode != OperationMode.HOMING and self._alloc_mode(mode) is not None

    def get_mode(self) -> int:
        """The id of the active mode, NO_MODE if none is active."""
        with self._mode_cond:
            if self._selected_mode is not None:
                return self._selected_mode.mode_id
            return OperationMode.NO_MODE

    def register_mode(self, mode: int, factory: Callable[[], Mode]) -> bool:
        """Register a factory for ``mode``; it runs at init if the device supports the mode.

        Returns False if a factory for ``mode`` was already registered.
        """
        if mode in self._mode_allocators:
            return False

        def allocate() -> None:
            if self._is_mode_supported_by_device(mode):
                self._register_instance(mode, factory())

        self._mode_allocators[mode] = allocate
        return True

    def register_default_modes(self, storage: MemoryStorage) -> None:
        """Register the handlers for all standard modes."""
        self.register_mode(OperationMode.PROFILED_POSITION, lambda: ProfiledPositionMode(storage))
        self.register_mode(OperationMode.VELOCITY, lambda: VelocityMode(storage))
        self.register_mode(OperationMode.PROFILED_VELOCITY, lambda: ProfiledVelocityMode(storage))
        self.register_mode(OperationMode.PROFILED_TORQUE, lambda: ProfiledTorqueMode(storage))
        self.register_mode(OperationMode.HOMING, lambda: DefaultHomingMode(storage))
        self.register_mode(
            OperationMode.INTERPOLATED_POSITION, lambda: InterpolatedPositionMode(storage)
        )
        self.register_mode(
            OperationMode.CYCLIC_SYNCHRONOUS_POSITION,
            lambda: CyclicSynchronousPositionMode(storage),
        )
        self.register_mode(
            OperationMode.CYCLIC_SYNCHRONOUS_VELOCITY,
            lambda: CyclicSynchronousVelocityMode(storage),
        )
        self.register_mode(
            OperationMode.CYCLIC_SYNCHRONOUS_TORQUE,
            lambda: CyclicSynchronousTorqueMode(storage),
        )

    # layer handlers

    def handle_read(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state > LayerState.OFF:
            self._read_state(status, current_state)

    def handle_write(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state <= LayerState.OFF:
            return
        with self._cw_lock:
            self._control_word |= _HALT_BIT
            if self._state_handler.state == InternalState.OPERATION_ENABLE:
                with self._mode_cond:
                    accessor = WordAccessor(self._control_word, OP_MODE_MASK)
                    okay = False
                    selected = self._selected_mode
                    if selected is not None and selected.mode_id == self._mode_id:
                        okay = selected.write(accessor)
                    else:
                        accessor.assign(0)
                    self._control_word = accessor.word
                    if okay:
                        self._control_word &= ~_HALT_BIT & 0xFFFF
            fault_reset, self._start_fault_reset = self._start_fault_reset, False
            if fault_reset:
                self._control_word_entry.set_cached(self._control_word & ~_FAULT_RESET_BIT & 0xFFFF)
            else:
                self._control_word_entry.set_cached(self._control_word)

    def handle_diag(self, report: LayerStatus) -> None:
        with self._sw_lock:
            sw = self._status_word
        state = self._state_handler.state
        if state in (
            InternalState.NOT_READY_TO_SWITCH_ON,
            InternalState.SWITCH_ON_DISABLED,
            InternalState.READY_TO_SWITCH_ON,
            InternalState.SWITCHED_ON,
        ):
            report.warn("Motor operation is not enabled")
        elif state == InternalState.QUICK_STOP_ACTIVE:
            report.error("Quick stop is active")
        elif state in (InternalState.FAULT, InternalState.FAULT_REACTION_ACTIVE):
            report.error("Motor has fault")
        elif state == InternalState.UNKNOWN:
            report.error("State is unknown")
            report.add("status_word", sw)

        if sw & _WARNING_BIT:
            report.warn("Warning bit is set")
        if sw & _INTERNAL_LIMIT_BIT:
            report.error("Internal limit active")

    def handle_init(self, status: LayerStatus) -> None:
        for allocate in list(self._mode_allocators.values()):
            allocate()

        if not self._read_state(status, LayerState.INIT):
            status.error("Could not read motor state")
            return
        with self._cw_lock:
            self._control_word = 0
            self._start_fault_reset = True
        if not self._switch_state(status, InternalState.OPERATION_ENABLE):
            status.error("Could not enable motor")
            return

        homing = self._alloc_mode(OperationMode.HOMING)
        if homing is None:
            return
        if not isinstance(homing, HomingMode):
            status.error("Homing mode has incorrect handler")
            return
        if not self._switch_mode(status, OperationMode.HOMING):
            status.error("Could not enter homing mode")
            return
        if not homing.execute_homing(status):
            status.error("Homing failed")
            return
        self._switch_mode(status, OperationMode.NO_MODE)

    def handle_shutdown(self, status: LayerStatus) -> None:
        self._switch_mode(status, OperationMode.NO_MODE)
        self._switch_state(status, InternalState.SWITCH_ON_DISABLED)

    def handle_halt(self, status: LayerStatus) -> None:
        state = self._state_handler.state
        with self._cw_lock:
            if state in (InternalState.FAULT_REACTION_ACTIVE, InternalState.FAULT):
                return
            if state != InternalState.OPERATION_ENABLE:
                self._target_state = state
                return
            self._target_state = InternalState.QUICK_STOP_ACTIVE
            try:
                self._control_word, _ = set_transition(
                    self._control_word, state, InternalState.QUICK_STOP_ACTIVE, False
                )
            except IllegalTransition:
                status.warn("Could not quick stop")

    def handle_recover(self, status: LayerStatus) -> None:
        self._start_fault_reset = True
        with self._mode_cond:
            if self._selected_mode is not None and not self._selected_mode.start():
                status.error("Could not restart mode.")
                return
        if not self._switch_state(status, InternalState.OPERATION_ENABLE):
            status.error("Could not enable motor")

    # internals

    def _is_mode_supported_by_device(self, mode: int) -> bool:
        if not self._supported_drive_modes.valid():
            raise RuntimeError("Supported drive modes (object 6502) is not valid")
        return 0 < mode <= 32 and bool(self._supported_drive_modes.get_cached() & (1 << (mode - 1)))

    def _register_instance(self, mode: int, handler: Mode | None) -> None:
        with self._map_lock:
            if handler is not None and handler.mode_id == mode:
                self._modes.setdefault(mode, handler)

    def _alloc_mode(self, mode: int) -> Mode | None:
        if self._is_mode_supported_by_device(mode):
            with self._map_lock:
                return self._modes.get(mode)
        return None

    def _read_state(self, status: LayerStatus, current_state: LayerState) -> bool:
        sw = self._status_word_entry.get()
        with self._sw_lock:
            old_sw, self._status_word = self._status_word, sw

        self._state_handler.read(sw)

        with self._mode_cond:
            if self._monitor_mode:
                new_mode = self._op_mode_display.get()
            else:
                new_mode = self._op_mode_display.get_cached()
            selected = self._selected_mode
            if selected is not None and selected.mode_id == new_mode:
                if not selected.read(sw):
                    status.error("Mode handler has error")
            if new_mode != self._mode_id:
                self._mode_id = new_mode
                self._mode_cond.notify_all()
            if selected is not None and selected.mode_id != new_mode:
                status.warn("mode does not match")

        if sw & _INTERNAL_LIMIT_BIT:
            if old_sw & _INTERNAL_LIMIT_BIT or current_state != LayerState.READY:
                status.warn("Internal limit active")
            else:
                status.error("Internal limit active")
        return True

    def _switch_mode(self, status: LayerStatus, mode: int) -> bool:
        if mode == OperationMode.NO_MODE:
            with self._mode_cond:
                self._selected_mode = None
                try:
                    self._op_mode.set(mode)
                except Exception:  # the drive may refuse; deselecting is what counts
                    pass
            return True

        next_mode = self._alloc_mode(mode)
        if next_mode is None:
            status.error("Mode is not supported.")
            return False
        if not next_mode.start():
            status.error("Could not start mode.")
            return False

        with self._mode_cond:
            selected = self._selected_mode
            if self._mode_id == mode and selected is not None and selected.mode_id == mode:
                return True
            self._selected_mode = None

        if not self._switch_state(status, self._switching_state):
            return False

        self._op_mode.set(mode)

        deadline = time.monotonic() + self.MODE_SWITCH_TIMEOUT
        if self._monitor_mode:
            with self._mode_cond:
                self._mode_cond.wait_for(
                    lambda: self._mode_id == mode, max(0.0, deadline - time.monotonic())
                )
        else:
            while True:
                with self._mode_cond:
                    if self._mode_id == mode:
                        break
                if time.monotonic() >= deadline:
                    break
                self._op_mode_display.get()
                time.sleep(self.POLL_INTERVAL)

        with self._mode_cond:
            if self._mode_id == mode:
                self._selected_mode = next_mode
                okay = True
            else:
                okay = False
                status.error("Mode switch timed out.")
                self._op_mode.set(self._mode_id)

        if not self._switch_state(status, InternalState.OPERATION_ENABLE):
            return False
        return okay

    def _switch_state(self, status: LayerStatus, target: InternalState) -> bool:
        deadline = time.monotonic() + self._state_switch_timeout
        state = self._state_handler.state
        self._target_state = target
        while state != self._target_state:
            with self._cw_lock:
                try:
                    self._control_word, hop = set_transition(
                        self._control_word, state, self._target_state, True
                    )
                except IllegalTransition:
                    status.error("Could not set transition")
                    return False
            if state != hop:
                changed, state = self._state_handler.wait_for_new_state(deadline, state)
                if not changed:
                    status.error("Transition timeout")
                    return False
        return state == target