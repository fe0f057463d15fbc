"""Host-side VM sandbox: lifecycle, console, drop folder and relay.

The guest never sees the host filesystem beyond the drop folder share and
never reaches the network except through the allowlisted relay.
"""

from vmsandbox.vm.console import ConsoleBridge, Key, KeyEvent, key_event_to_bytes
from vmsandbox.vm.drop_folder import DropEvent, DropFolderWatcher
from vmsandbox.vm.filesystem import build_device_args, prepare_session_disk
from vmsandbox.vm.hypervisor import Hypervisor, RestState, VfkitHypervisor
from vmsandbox.vm.lifecycle import VmLifecycleManager, VmSession
from vmsandbox.vm.models import GuestEnvironment, SharedFolder, VmConfig, VmState
from vmsandbox.vm.remote_channel import (
    Allowlist,
    RelayResult,
    RelayStatus,
    RemoteMessage,
    RemoteRelay,
    relay,
)

__all__ = [
    # Lifecycle
    "VmLifecycleManager",
    "VmSession",
    "VmConfig",
    "VmState",
    "SharedFolder",
    "GuestEnvironment",
    "Hypervisor",
    "VfkitHypervisor",
    "RestState",
    "build_device_args",
    "prepare_session_disk",
    # Console
    "ConsoleBridge",
    "Key",
    "KeyEvent",
    "key_event_to_bytes",
    # Drop folder
    "DropEvent",
    "DropFolderWatcher",
    # Relay
    "Allowlist",
    "RemoteMessage",
    "RemoteRelay",
    "RelayResult",
    "RelayStatus",
    "relay",
]
