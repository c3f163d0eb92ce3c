"""Operation modes of a drive and the handlers that drive each one."""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum, IntEnum
from typing import Any, Callable

from .entries import MemoryStorage
from .state import ControlWord, StatusWord
from .status import LayerStatus

_log = logging.getLogger(__name__)


class OperationMode(IntEnum):
    """Modes of operation (object 0x6060)."""

    NO_MODE = 0
    PROFILED_POSITION = 1
    VELOCITY = 2
    PROFILED_VELOCITY = 3
    PROFILED_TORQUE = 4
    RESERVED = 5
    HOMING = 6
    INTERPOLATED_POSITION = 7
    CYCLIC_SYNCHRONOUS_POSITION = 8
    CYCLIC_SYNCHRONOUS_VELOCITY = 9
    CYCLIC_SYNCHRONOUS_TORQUE = 10


class IntType(Enum):
    """Fixed-width integer types that a target value is stored in."""

    UINT8 = (8, False)
    INT8 = (8, True)
    UINT16 = (16, False)
    INT16 = (16, True)
    UINT32 = (32, False)
    INT32 = (32, True)
    UINT64 = (64, False)
    INT64 = (64, True)

    def __init__(self, bits: int, signed: bool) -> None:
        self.bits = bits
        self.signed = signed

    @property
    def min(self) -> int:
        return -(1 << (self.bits - 1)) if self.signed else 0

    @property
    def max(self) -> int:
        return (1 << (self.bits - 1)) - 1 if self.signed else (1 << self.bits) - 1


class WordAccessor:
    """A 16-bit word of which only the bits in ``mask`` may be changed."""

    def __init__(self, word: int, mask: int) -> None:
        self.word = word & 0xFFFF
        self.mask = mask

    def set(self, bit: int) -> bool:
        """Set ``bit`` if it is in the mask; return whether it was."""
        val = self.mask & (1 << bit)
        self.word |= val
        return bool(val)

    def reset(self, bit: int) -> bool:
        """Clear ``bit`` if it is in the mask; return whether it was."""
        val = self.mask & (1 << bit)
        self.word &= ~val & 0xFFFF
        return bool(val)

    def get(self, bit: int) -> bool:
        """Whether ``bit`` is set in the word, masked or not."""
        return bool(self.word & (1 << bit))

    def masked(self) -> int:
        """The bits of the word that fall in the mask."""
        return self.word & self.mask

    def assign(self, value: int) -> None:
        """Replace the masked bits with those of ``value``."""
        self.word = (self.word & ~self.mask & 0xFFFF) | (value & self.mask)


OP_MODE_MASK = (
    (1 << ControlWord.OPERATION_MODE_SPECIFIC0)
    | (1 << ControlWord.OPERATION_MODE_SPECIFIC1)
    | (1 << ControlWord.OPERATION_MODE_SPECIFIC2)
    | (1 << ControlWord.OPERATION_MODE_SPECIFIC3)
)


class Mode(ABC):
    """Handler for one operation mode."""

    def __init__(self, mode_id: int) -> None:
        self.mode_id = mode_id

    @abstractmethod
    def start(self) -> bool:
        """Prepare the mode before it is entered."""

    @abstractmethod
    def read(self, sw: int) -> bool:
        """Take in a status word; False signals a mode error."""

    @abstractmethod
    def write(self, cw: WordAccessor) -> bool:
        """Fill in the mode-specific control word bits; True if active."""

    def set_target(self, value: float) -> bool:
        """Modes without a target reject every value."""
        _log.error("Mode.set_target not implemented")
        return False


class ModeTargetHelper(Mode):
    """A mode whose target is a fixed-width integer, clamped on overflow."""

    def __init__(self, mode_id: int, int_type: IntType) -> None:
        super().__init__(mode_id)
        self.int_type = int_type
        self._target = 0
        self._has_target = False

    @property
    def has_target(self) -> bool:
        return self._has_target

    @property
    def target(self) -> int:
        return self._target

    def set_target(self, value: float) -> bool:
        """Store ``value`` truncated to the target type, clamping out-of-range values."""
        try:
            val = float(value)
        except (TypeError, ValueError, OverflowError):
            _log.error("Was not able to cast command %r", value)
            return False
        if math.isnan(val):
            _log.error("target command is not a number")
            return False
        lo, hi = self.int_type.min, self.int_type.max
        if val <= float(lo) - 1.0:
            _log.warning("Command %s does not fit into target, clamping to min limit", val)
            self._target = lo
        elif val >= float(hi) + 1.0:
            _log.warning("Command %s does not fit into target, clamping to max limit", val)
            self._target = hi
        else:
            self._target = max(lo, min(hi, int(val)))
        self._has_target = True
        return True

    def start(self) -> bool:
        """Forget any previous target."""
        self._has_target = False
        return True


class ModeForwardHelper(ModeTargetHelper):
    """A mode that forwards its target to one object and sets fixed control bits.

    Subclasses fix the mode id, the target type, the object and the bits.
    """

    MODE_ID: int
    INT_TYPE: IntType
    INDEX: int
    SUBINDEX: int = 0
    CW_MASK: int = 0

    def __init__(self, storage: MemoryStorage) -> None:
        super().__init__(self.MODE_ID, self.INT_TYPE)
        if self.SUBINDEX:
            self.target_entry = storage.entry(self.INDEX, self.SUBINDEX)
        else:
            self.target_entry = storage.entry(self.INDEX)

    def read(self, sw: int) -> bool:
        return True

    def write(self, cw: WordAccessor) -> bool:
        if self.has_target:
            cw.assign(cw.masked() | self.CW_MASK)
            self.target_entry.set(self.target)
            return True
        cw.assign(cw.masked() & ~self.CW_MASK)
        return False


class ProfiledVelocityMode(ModeForwardHelper):
    MODE_ID = OperationMode.PROFILED_VELOCITY
    INT_TYPE = IntType.INT32
    INDEX = 0x60FF


class ProfiledTorqueMode(ModeForwardHelper):
    MODE_ID = OperationMode.PROFILED_TORQUE
    INT_TYPE = IntType.INT16
    INDEX = 0x6071


class CyclicSynchronousPositionMode(ModeForwardHelper):
    MODE_ID = OperationMode.CYCLIC_SYNCHRONOUS_POSITION
    INT_TYPE = IntType.INT32
    INDEX = 0x607A


class CyclicSynchronousVelocityMode(ModeForwardHelper):
    MODE_ID = OperationMode.CYCLIC_SYNCHRONOUS_VELOCITY
    INT_TYPE = IntType.INT32
    INDEX = 0x60FF


class CyclicSynchronousTorqueMode(ModeForwardHelper):
    MODE_ID = OperationMode.CYCLIC_SYNCHRONOUS_TORQUE
    INT_TYPE = IntType.INT16
    INDEX = 0x6071


class VelocityMode(ModeForwardHelper):
    MODE_ID = OperationMode.VELOCITY
    INT_TYPE = IntType.INT16
    INDEX = 0x6042
    CW_MASK = (
        (1 << ControlWord.OPERATION_MODE_SPECIFIC0)
        | (1 << ControlWord.OPERATION_MODE_SPECIFIC1)
        | (1 << ControlWord.OPERATION_MODE_SPECIFIC2)
    )


class InterpolatedPositionMode(ModeForwardHelper):
    MODE_ID = OperationMode.INTERPOLATED_POSITION
    INT_TYPE = IntType.INT32
    INDEX = 0x60C1
    SUBINDEX = 0x01
    CW_MASK = 1 << ControlWord.OPERATION_MODE_SPECIFIC0


class ProfiledPositionMode(ModeTargetHelper):
    """Profile position mode with the new set-point handshake."""

    MASK_REACHED = 1 << StatusWord.TARGET_REACHED
    MASK_ACKNOWLEDGED = 1 << StatusWord.OPERATION_MODE_SPECIFIC0
    MASK_ERROR = 1 << StatusWord.OPERATION_MODE_SPECIFIC1

    CW_NEW_POINT = ControlWord.OPERATION_MODE_SPECIFIC0
    CW_IMMEDIATE = ControlWord.OPERATION_MODE_SPECIFIC1
    CW_BLENDING = ControlWord.OPERATION_MODE_SPECIFIC3

    def __init__(self, storage: MemoryStorage) -> None:
        super().__init__(OperationMode.PROFILED_POSITION, IntType.INT32)
        self.target_position = storage.entry(0x607A)
        self._sw = 0
        self._last_target = math.nan

    def start(self) -> bool:
        self._sw = 0
        self._last_target = math.nan
        return super().start()

    def read(self, sw: int) -> bool:
        self._sw = sw
        return (sw & self.MASK_ERROR) == 0

    def write(self, cw: WordAccessor) -> bool:
        cw.set(self.CW_IMMEDIATE)
        if not self.has_target:
            return False
        target = self.target
        acknowledged = self._sw & self.MASK_ACKNOWLEDGED
        if not acknowledged and target != self._last_target:
            if cw.get(self.CW_NEW_POINT):
                cw.reset(self.CW_NEW_POINT)
            else:
                self.target_position.set(target)
                cw.set(self.CW_NEW_POINT)
                self._last_target = target
        elif acknowledged:
            cw.reset(self.CW_NEW_POINT)
        return True


class HomingMode(Mode):
    """A homing mode that can run the homing procedure to completion."""

    SW_ATTAINED = StatusWord.OPERATION_MODE_SPECIFIC0
    SW_ERROR = StatusWord.OPERATION_MODE_SPECIFIC1
    CW_START_HOMING = ControlWord.OPERATION_MODE_SPECIFIC0

    def __init__(self) -> None:
        super().__init__(OperationMode.HOMING)

    @abstractmethod
    def execute_homing(self, status: LayerStatus) -> bool:
        """Run homing; on failure record the reason in ``status`` and return False."""


class DefaultHomingMode(HomingMode):
    """Homing driven by the start bit and the attained/reached/error status bits."""

    MASK_REACHED = 1 << StatusWord.TARGET_REACHED
    MASK_ATTAINED = 1 << HomingMode.SW_ATTAINED
    MASK_ERROR = 1 << HomingMode.SW_ERROR

    PREPARE_TIMEOUT = 1.0
    FINISH_TIMEOUT = 10.0

    def __init__(self, storage: MemoryStorage) -> None:
        super().__init__()
        self.homing_method = storage.entry(0x6098)
        self._execute = False
        self._cond = threading.Condition()
        self._status = 0

    def _error(self, status: LayerStatus, msg: str) -> bool:
        self._execute = False
        status.error(msg)
        return False

    def start(self) -> bool:
        self._execute = False
        return self.read(0)

    def read(self, sw: int) -> bool:
        with self._cond:
            old = self._status
            self._status = sw & (self.MASK_REACHED | self.MASK_ATTAINED | self.MASK_ERROR)
            if old != self._status:
                self._cond.notify_all()
        return True

    def write(self, cw: WordAccessor) -> bool:
        cw.assign(0)
        if self._execute:
            cw.set(self.CW_START_HOMING)
            return True
        return False

    def _wait(self, deadline: float, mask: int, not_equal: int) -> bool:
        predicate: Callable[[], Any] = lambda: (self._status & mask) != not_equal
        return self._cond.wait_for(predicate, max(0.0, deadline - time.monotonic()))

    def execute_homing(self, status: LayerStatus) -> bool:
        if not self.homing_method.valid():
            return self._error(status, "homing method entry is not valid")
        if self.homing_method.get_cached() == 0:
            return True

        reached, attained, err = self.MASK_REACHED, self.MASK_ATTAINED, self.MASK_ERROR
        prepare_deadline = time.monotonic() + self.PREPARE_TIMEOUT
        with self._cond:
            if not self._wait(prepare_deadline, err | reached, 0):
                return self._error(status, "could not prepare homing")
            if self._status & err:
                return self._error(status, "homing error before start")

            self._execute = True

            if not self._wait(prepare_deadline, err | attained | reached, reached):
                return self._error(status, "homing did not start")
            if self._status & err:
                return self._error(status, "homing error at start")

            finish_deadline = time.monotonic() + self.FINISH_TIMEOUT

            if not self._wait(finish_deadline, err | attained, 0):
                return self._error(status, "homing not attained")
            if self._status & err:
                return self._error(status, "homing error during process")

            if not self._wait(finish_deadline, err | reached, 0):
                return self._error(status, "homing did not stop")
            if self._status & err:
                return self._error(status, "homing error during stop")

            if (self._status & reached) and (self._status & attained):
                self._execute = False
                return True

        return self._error(status, "something went wrong while homing")