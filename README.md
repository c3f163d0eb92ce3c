# canopen402

Pure-Python logic for CANopen motor drives that follow the drive profile
(objects 0x6040 control word, 0x6041 status word, 0x6060/0x6061 modes of
operation): the power state machine, control-word transitions, operation
modes with target clamping, homing, and a motor layer that ties them
together. It also holds helpers that validate the configuration of a chain
of nodes and of a sync producer.

There are no runtime dependencies. Object dictionary access goes through
`MemoryStorage` and `MemoryEntry`, an in-memory storage that is also
suitable for tests and simulation.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `canopen402.status`: `Level` (`OK`, `WARN`, `ERROR`, `STALE`/`UNBOUNDED`)
  and `LayerStatus`, which keeps the worst level seen, the reasons
  (`reason()` joins them with `"; "`) and key/value diagnostics
  (`add`, `bounded`, `equals`).
- `canopen402.state`: `StatusWord`, `ControlWord`, `InternalState`,
  `State402` (thread-safe state tracker with `read` and
  `wait_for_new_state`), and the helpers `decode_status_word`,
  `next_state_for_enabling`, `apply_transition` and `set_transition`.
  A transition that has no command raises `IllegalTransition`.
- `canopen402.entries`: `MemoryStorage` (`define`, `entry`) and
  `MemoryEntry` (`get`, `get_cached`, `set`, `set_cached`, `valid`).
  An entry may be given `fetch` and `push` callables for device access;
  `set` also records each value in `writes`. Looking up an undefined
  object, or reading an unbound or empty entry, raises `EntryNotValid`.
- `canopen402.modes`: `OperationMode`, `IntType`, `WordAccessor`, `Mode`,
  `ModeTargetHelper`, `ModeForwardHelper` and its subclasses
  (`ProfiledVelocityMode`, `ProfiledTorqueMode`,
  `CyclicSynchronousPositionMode`, `CyclicSynchronousVelocityMode`,
  `CyclicSynchronousTorqueMode`, `VelocityMode`,
  `InterpolatedPositionMode`), `ProfiledPositionMode`, `HomingMode` and
  `DefaultHomingMode`.
- `canopen402.motor`: `LayerState` and `Motor402`, the drive layer with
  `handle_read`, `handle_write`, `handle_diag`, `handle_init`,
  `handle_halt`, `handle_recover` and `handle_shutdown`, plus
  `set_target`, `enter_mode_and_wait`, `is_mode_supported`, `get_mode`,
  `register_mode` and `register_default_modes`.
- `canopen402.chain_config`: `merge_struct`, `parse_object_name`,
  `parse_node_overlay`, `node_list`, `TriggerResponse` and the
  `response_logger` context manager. Malformed configuration raises
  `ConfigError`.
- `canopen402.sync_config`: `SyncConfig`, `parse_sync_config`,
  `parse_sync_node_config`, `parse_heartbeat_rate` and `join`.

## Examples

Stepping the state machine towards operation enabled:

```python
from canopen402.state import InternalState, State402, set_transition

handler = State402()
state = handler.read(0x0040)   # SWITCH_ON_DISABLED
cw, hop = set_transition(0, state, InternalState.OPERATION_ENABLE, with_next=True)
# cw == 0x0006 (shutdown command), hop == InternalState.READY_TO_SWITCH_ON
```

Targets for an operation mode are clamped to the range of the mode's
integer type:

```python
from canopen402.entries import MemoryStorage
from canopen402.modes import ProfiledTorqueMode

storage = MemoryStorage()
storage.define(0x6071, 0)
mode = ProfiledTorqueMode(storage)
mode.start()
mode.set_target(1e9)           # True; mode.target == 32767
```

`Motor402(name, storage, settings)` needs entries 0x6041, 0x6040, 0x6061
and 0x6060 in the storage; 0x6502 (supported drive modes) is needed for
mode handling. The settings mapping understands `switching_state`,
`monitor_mode` (default `True`) and `state_switch_timeout` in seconds
(default 5).

Validating chain settings:

```python
from canopen402.sync_config import parse_sync_config

config = parse_sync_config(10, overflow=0)
config.enabled          # True
config.update_period    # 0.01
```

## What this package does not do

It does not talk to a CAN bus, parse EDS/DCF files, run a sync or heartbeat
producer, or provide a running node or command-line program. The motor
layer works on whatever storage it is given; wiring it to real hardware is
left to the caller.