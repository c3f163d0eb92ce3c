import contextlib
import threading
import time

import pytest

from canopen402.entries import MemoryEntry, MemoryStorage
from canopen402.modes import OperationMode
from canopen402.motor import LayerState, Motor402
from canopen402.state import ControlWord, InternalState as S, StatusWord
from canopen402.status import LayerStatus, Level

_SW = {
    S.NOT_READY_TO_SWITCH_ON: 0x00,
    S.SWITCH_ON_DISABLED: 1 << StatusWord.SWITCH_ON_DISABLED,
    S.READY_TO_SWITCH_ON: (1 << StatusWord.QUICK_STOP) | (1 << StatusWord.READY_TO_SWITCH_ON),
    S.SWITCHED_ON: (1 << StatusWord.QUICK_STOP)
    | (1 << StatusWord.SWITCHED_ON)
    | (1 << StatusWord.READY_TO_SWITCH_ON),
    S.OPERATION_ENABLE: (1 << StatusWord.QUICK_STOP)
    | (1 << StatusWord.OPERATION_ENABLED)
    | (1 << StatusWord.SWITCHED_ON)
    | (1 << StatusWord.READY_TO_SWITCH_ON),
    S.QUICK_STOP_ACTIVE: (1 << StatusWord.OPERATION_ENABLED)
    | (1 << StatusWord.SWITCHED_ON)
    | (1 << StatusWord.READY_TO_SWITCH_ON),
    S.FAULT: 1 << StatusWord.FAULT,
}

VELOCITY_BIT = 1 << (OperationMode.PROFILED_VELOCITY - 1)
HOMING_BIT = 1 << (OperationMode.HOMING - 1)


class Drive:
    """A simulated drive that reacts to control word commands."""

    def __init__(self):
        self._lock = threading.Lock()
        self.state = S.SWITCH_ON_DISABLED
        self.op_mode = 0
        self.op_mode_history = []
        self.extra = 0

    def status_word(self):
        with self._lock:
            return _SW[self.state] | self.extra

    def set_op_mode(self, value):
        self.op_mode = value
        self.op_mode_history.append(value)

    def step(self, cw):
        with self._lock:
            self.state = self._next(self.state, cw)

    @staticmethod
    def _next(state, cw):
        so = cw & (1 << ControlWord.SWITCH_ON)
        ev = cw & (1 << ControlWord.ENABLE_VOLTAGE)
        qs = cw & (1 << ControlWord.QUICK_STOP)
        eo = cw & (1 << ControlWord.ENABLE_OPERATION)
        fr = cw & (1 << ControlWord.FAULT_RESET)
        if state == S.FAULT:
            return S.SWITCH_ON_DISABLED if fr else state
        if state == S.NOT_READY_TO_SWITCH_ON:
            return S.SWITCH_ON_DISABLED
        if not ev:
            return S.SWITCH_ON_DISABLED
        if not qs:
            if state == S.OPERATION_ENABLE:
                return S.QUICK_STOP_ACTIVE
            if state in (S.READY_TO_SWITCH_ON, S.SWITCHED_ON):
                return S.SWITCH_ON_DISABLED
            return state
        if not so:
            if state in (S.SWITCH_ON_DISABLED, S.SWITCHED_ON, S.OPERATION_ENABLE):
                return S.READY_TO_SWITCH_ON
            return state
        if not eo:
            if state in (S.READY_TO_SWITCH_ON, S.OPERATION_ENABLE):
                return S.SWITCHED_ON
            return state
        if state in (S.SWITCHED_ON, S.QUICK_STOP_ACTIVE):
            return S.OPERATION_ENABLE
        if state == S.READY_TO_SWITCH_ON:
            return S.SWITCHED_ON
        return state


def make_rig(mask=VELOCITY_BIT, settings=None, supported=True):
    drive = Drive()
    storage = MemoryStorage()
    storage.define(0x6041, MemoryEntry(0, fetch=drive.status_word))
    storage.define(0x6040, 0)
    storage.define(0x6061, MemoryEntry(0, fetch=lambda: drive.op_mode))
    storage.define(0x6060, MemoryEntry(0, push=drive.set_op_mode))
    if supported:
        storage.define(0x6502, mask)
    for index in (0x60FF, 0x6071, 0x607A, 0x6042):
        storage.define(index, 0)
    storage.define(0x60C1, 0, subindex=1)
    storage.define(0x6098, 0)
    motor = Motor402("motor", storage, settings or {})
    motor.register_default_modes(storage)
    return motor, drive, storage


@contextlib.contextmanager
def running(motor, drive, storage):
    stop = threading.Event()

    def loop():
        while not stop.is_set():
            st = LayerStatus()
            motor.handle_write(st, LayerState.READY)
            drive.step(storage.entry(0x6040).get_cached())
            motor.handle_read(st, LayerState.READY)
            time.sleep(0.001)

    thread = threading.Thread(target=loop, daemon=True)
    thread.start()
    try:
        yield
    finally:
        stop.set()
        thread.join(2)


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def test_init_enables_motor():
    motor, drive, storage = make_rig()
    status = LayerStatus()
    with running(motor, drive, storage):
        motor.handle_init(status)
        assert status.bounded(Level.OK)
        assert drive.state == S.OPERATION_ENABLE
        assert motor.get_mode() == OperationMode.NO_MODE


def test_init_times_out_without_drive_response():
    motor, drive, storage = make_rig(settings={"state_switch_timeout": 0.2})
    status = LayerStatus()
    motor.handle_init(status)
    assert status.equals(Level.ERROR)
    assert "Transition timeout" in status.reasons
    assert "Could not enable motor" in status.reasons


def test_enter_mode_and_set_target():
    motor, drive, storage = make_rig()
    with running(motor, drive, storage):
        motor.handle_init(LayerStatus())
        assert motor.enter_mode_and_wait(OperationMode.PROFILED_VELOCITY)
        assert motor.get_mode() == OperationMode.PROFILED_VELOCITY
        assert drive.op_mode == OperationMode.PROFILED_VELOCITY
        assert motor.set_target(100.0)
        assert wait_until(lambda: 100 in storage.entry(0x60FF).writes)
        assert wait_until(
            lambda: storage.entry(0x6040).get_cached() & (1 << ControlWord.HALT) == 0
        )


def test_enter_mode_without_monitoring():
    motor, drive, storage = make_rig(settings={"monitor_mode": False})
    with running(motor, drive, storage):
        motor.handle_init(LayerStatus())
        assert motor.enter_mode_and_wait(OperationMode.PROFILED_VELOCITY)
        assert motor.get_mode() == OperationMode.PROFILED_VELOCITY


def test_enter_unsupported_mode_fails():
    motor, drive, storage = make_rig()
    with running(motor, drive, storage):
        motor.handle_init(LayerStatus())
        assert not motor.enter_mode_and_wait(OperationMode.PROFILED_TORQUE)
        assert not motor.enter_mode_and_wait(OperationMode.HOMING)
        assert motor.get_mode() == OperationMode.NO_MODE


def test_set_target_requires_operation_enabled():
    motor, _, _ = make_rig()
    assert motor.set_target(1.0) is False


def test_is_mode_supported():
    motor, drive, storage = make_rig(mask=VELOCITY_BIT | HOMING_BIT)
    with running(motor, drive, storage):
        motor.handle_init(LayerStatus())
        assert motor.is_mode_supported(OperationMode.PROFILED_VELOCITY)
        assert not motor.is_mode_supported(OperationMode.HOMING)
        assert not motor.is_mode_supported(OperationMode.PROFILED_POSITION)


def test_is_mode_supported_needs_supported_modes_object():
    motor, _, _ = make_rig(supported=False)
    with pytest.raises(RuntimeError):
        motor.is_mode_supported(OperationMode.PROFILED_VELOCITY)


def test_register_mode_only_once():
    motor, _, storage = make_rig()
    assert motor.register_mode(42, lambda: None) is True
    assert motor.register_mode(42, lambda: None) is False
    assert motor.register_mode(OperationMode.VELOCITY, lambda: None) is False


def test_init_runs_homing_then_leaves_mode():
    motor, drive, storage = make_rig(mask=VELOCITY_BIT | HOMING_BIT)
    status = LayerStatus()
    with running(motor, drive, storage):
        motor.handle_init(status)
    assert status.bounded(Level.OK)
    assert OperationMode.HOMING in drive.op_mode_history
    assert drive.op_mode_history[-1] == OperationMode.NO_MODE
    assert motor.get_mode() == OperationMode.NO_MODE


def test_shutdown_disables_motor():
    motor, drive, storage = make_rig()
    with running(motor, drive, storage):
        motor.handle_init(LayerStatus())
        motor.enter_mode_and_wait(OperationMode.PROFILED_VELOCITY)
        motor.handle_shutdown(LayerStatus())
        assert drive.state == S.SWITCH_ON_DISABLED
        assert motor.get_mode() == OperationMode.NO_MODE


def test_halt_triggers_quick_stop():
    motor, drive, storage = make_rig()
    with running(motor, drive, storage):
        motor.handle_init(LayerStatus())
        status = LayerStatus()
        motor.handle_halt(status)
        assert status.bounded(Level.OK)
        wait_until(lambda: drive.state == S.QUICK_STOP_ACTIVE)
        assert drive.state == S.QUICK_STOP_ACTIVE
        cw = storage.entry(0x6040).get_cached()
        stop_bits = (1 << ControlWord.QUICK_STOP) | (1 << ControlWord.ENABLE_VOLTAGE)
        assert cw & stop_bits == 1 << ControlWord.ENABLE_VOLTAGE


def test_recover_reenables_motor():
    motor, drive, storage = make_rig()
    with running(motor, drive, storage):
        motor.handle_init(LayerStatus())
        motor.handle_shutdown(LayerStatus())
        assert drive.state == S.SWITCH_ON_DISABLED
        status = LayerStatus()
        motor.handle_recover(status)
        assert status.bounded(Level.OK)
        assert drive.state == S.OPERATION_ENABLE


def test_diag_reports_fault():
    motor, drive, _ = make_rig()
    drive.state = S.FAULT
    motor.handle_read(LayerStatus(), LayerState.READY)
    report = LayerStatus()
    motor.handle_diag(report)
    assert report.equals(Level.ERROR)
    assert "Motor has fault" in report.reasons


def test_diag_warns_when_not_enabled():
    motor, _, _ = make_rig()
    motor.handle_read(LayerStatus(), LayerState.READY)
    report = LayerStatus()
    motor.handle_diag(report)
    assert report.equals(Level.WARN)
    assert report.reasons == ["Motor operation is not enabled"]


def test_diag_reports_unknown_state_with_status_word():
    motor, drive, storage = make_rig()
    storage.define(0x6041, 1 << StatusWord.READY_TO_SWITCH_ON)
    motor = Motor402("motor", storage, {})
    motor.handle_read(LayerStatus(), LayerState.READY)
    report = LayerStatus()
    motor.handle_diag(report)
    assert "State is unknown" in report.reasons
    assert ("status_word", str(1 << StatusWord.READY_TO_SWITCH_ON)) in report.values


def test_read_skipped_when_off():
    motor, drive, _ = make_rig()
    drive.state = S.FAULT
    motor.handle_read(LayerStatus(), LayerState.OFF)
    report = LayerStatus()
    motor.handle_diag(report)
    assert "State is unknown" in report.reasons


def test_internal_limit_is_error_first_then_warning():
    motor, drive, _ = make_rig()
    drive.extra = 1 << StatusWord.INTERNAL_LIMIT
    first = LayerStatus()
    motor.handle_read(first, LayerState.READY)
    assert first.equals(Level.ERROR)
    assert "Internal limit active" in first.reasons
    second = LayerStatus()
    motor.handle_read(second, LayerState.READY)
    assert second.equals(Level.WARN)


def test_internal_limit_warns_outside_ready():
    motor, drive, _ = make_rig()
    drive.extra = 1 << StatusWord.INTERNAL_LIMIT
    status = LayerStatus()
    motor.handle_read(status, LayerState.INIT)
    assert status.equals(Level.WARN)


def test_write_sets_halt_bit_when_not_enabled():
    motor, _, storage = make_rig()
    motor.handle_write(LayerStatus(), LayerState.READY)
    assert storage.entry(0x6040).get_cached() == 1 << ControlWord.HALT


def test_write_skipped_when_off():
    motor, _, storage = make_rig()
    storage.entry(0x6040).set_cached(7)
    motor.handle_write(LayerStatus(), LayerState.OFF)
    assert storage.entry(0x6040).get_cached() == 7


@pytest.mark.parametrize("layer_state", [LayerState.INIT, LayerState.SHUTDOWN, LayerState.READY])
def test_write_acts_in_every_state_above_off(layer_state):
    assert LayerState.OFF < layer_state
    motor, _, storage = make_rig()
    storage.entry(0x6040).set_cached(7)
    motor.handle_write(LayerStatus(), layer_state)
    assert storage.entry(0x6040).get_cached() == 1 << ControlWord.HALT