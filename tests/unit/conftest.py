"""Unit-test conftest: real hypervisor safety net.

Unit tests must never launch a real VM. An ``autouse`` fixture replaces
``VfkitHypervisor.spawn`` with a guard that fails loudly, so a test that
forgets to inject ``FakeHypervisor`` is caught instead of trying to boot.
The settings cache is also cleared around every test so environment
tweaks in one test never leak into another.
"""

from __future__ import annotations

import pytest

from vmsandbox.settings import get_settings
from vmsandbox.vm.hypervisor import VfkitHypervisor


async def _guarded_spawn(self, args):
    raise RuntimeError(
        "Unit test attempted to spawn a real hypervisor. "
        "Pass FakeHypervisor to VmLifecycleManager instead."
    )


@pytest.fixture(autouse=True)
def _hypervisor_guard(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(VfkitHypervisor, "spawn", _guarded_spawn)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
