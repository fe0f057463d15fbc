"""vmsandbox: disposable VM sandbox for an autonomous coding assistant.

The assistant runs with full privileges inside a per-session VM. The host
side boots and supervises the VM, bridges its console, shares a drop
folder into it and relays allowlisted outbound messages on its behalf.
"""

__version__ = "0.1.0"
