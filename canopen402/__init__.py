"""Drive state machine, operation modes, motor layer and chain configuration helpers for CANopen."""

__version__ = "0.1.0"
__all__ = ["chain_config", "entries", "modes", "motor", "state", "status", "sync_config"]