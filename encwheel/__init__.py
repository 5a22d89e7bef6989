"""
encwheel - client-side orchestration for confidential wheel spins

Establishes computation definitions on an MPC execution cluster and submits
encrypted requests against them, tolerating races, stalled uploads, dropped
events and slow key propagation.
"""

__version__ = "0.1.0"


__all__ = [
    "EncwheelConfig",
    "load_config",
    "get_encwheel_home",
    "DefinitionLifecycleManager",
    "RequestOrchestrator",
    "EncryptedWheel",
]

from .config import EncwheelConfig, load_config, get_encwheel_home
from .definitions import DefinitionLifecycleManager
from .orchestrator import RequestOrchestrator
from .wheel import EncryptedWheel
