"""Unit tests for vmsandbox.vm.hypervisor and the fake hypervisor."""

import json
from pathlib import Path

import httpx
import pytest

from vmsandbox.exceptions import LaunchError
from vmsandbox.vm.fake import FakeHypervisor, rest_port_from_args
from vmsandbox.vm.hypervisor import RestState, VfkitHypervisor, parse_rest_state


@pytest.fixture
def mock_rest(monkeypatch: pytest.MonkeyPatch):
    """Route the hypervisor's httpx clients through a MockTransport.

    Returns a function taking the request handler; captured requests are
    appended to the returned list.
    """
    real_client = httpx.AsyncClient
    requests: list[httpx.Request] = []

    def install(handler):
        def recording(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return handler(request)

        transport = httpx.MockTransport(recording)
        monkeypatch.setattr(
            httpx,
            "AsyncClient",
            lambda **kwargs: real_client(transport=transport, **kwargs),
        )
        return requests

    return install


class TestParseRestState:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("VirtualMachineStateRunning", RestState.RUNNING),
            ("VirtualMachineStateStarting", RestState.STARTING),
            ("VirtualMachineStatePaused", RestState.PAUSED),
            ("VirtualMachineStateStopped", RestState.STOPPED),
            ("VirtualMachineStateError", RestState.ERROR),
            ("SomethingNew", RestState.ERROR),
            ("", RestState.ERROR),
        ],
    )
    def test_mapping(self, raw, expected):
        assert parse_rest_state(raw) is expected


class TestFindExecutable:
    def test_found_on_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        binary = tmp_path / "vfkit"
        binary.write_text("#!/bin/sh\n")
        binary.chmod(0o755)
        monkeypatch.setenv("PATH", str(tmp_path))
        assert VfkitHypervisor().find_executable() == str(binary)

    def test_missing(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PATH", str(tmp_path))
        monkeypatch.setattr(VfkitHypervisor, "SEARCH_DIRS", ())
        with pytest.raises(LaunchError, match="not found"):
            VfkitHypervisor().find_executable()

    def test_explicit_path(self, tmp_path: Path):
        binary = tmp_path / "custom-vfkit"
        binary.write_text("")
        assert VfkitHypervisor(str(binary)).find_executable() == str(binary)

    def test_explicit_path_missing(self, tmp_path: Path):
        with pytest.raises(LaunchError):
            VfkitHypervisor(str(tmp_path / "nope")).find_executable()


class TestRestApi:
    async def test_query_state(self, mock_rest):
        requests = mock_rest(
            lambda request: httpx.Response(200, json={"state": "VirtualMachineStateRunning"})
        )
        assert await VfkitHypervisor().query_state(7777) is RestState.RUNNING
        assert requests[0].method == "GET"
        assert str(requests[0].url) == "http://localhost:7777/vm/state"

    async def test_query_state_http_error(self, mock_rest):
        mock_rest(lambda request: httpx.Response(500))
        assert await VfkitHypervisor().query_state(7777) is RestState.ERROR

    async def test_query_state_invalid_json(self, mock_rest):
        mock_rest(lambda request: httpx.Response(200, content=b"not json"))
        assert await VfkitHypervisor().query_state(7777) is RestState.ERROR

    @pytest.mark.parametrize("body", [b"[]", b'"VirtualMachineStateRunning"', b"null", b"42"])
    async def test_query_state_non_object_json(self, mock_rest, body):
        mock_rest(lambda request: httpx.Response(200, content=body))
        assert await VfkitHypervisor().query_state(7777) is RestState.ERROR

    async def test_query_state_unreachable(self, mock_rest):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        mock_rest(refuse)
        assert await VfkitHypervisor().query_state(7777) is None

    async def test_request_stop(self, mock_rest):
        requests = mock_rest(lambda request: httpx.Response(200))
        assert await VfkitHypervisor().request_stop(7777) is True
        assert requests[0].method == "PUT"
        assert json.loads(requests[0].content) == {"state": "Stop"}

    async def test_request_stop_rejected(self, mock_rest):
        mock_rest(lambda request: httpx.Response(409))
        assert await VfkitHypervisor().request_stop(7777) is False

    async def test_request_stop_unreachable(self, mock_rest):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        mock_rest(refuse)
        assert await VfkitHypervisor().request_stop(7777) is False


class TestFakeHypervisor:
    def test_rest_port_from_args(self):
        assert rest_port_from_args(["--cpus", "2", "--restful-uri", "tcp://localhost:7777"]) == 7777
        assert rest_port_from_args(["--cpus", "2"]) is None

    async def test_boot_sequence(self):
        hypervisor = FakeHypervisor(boot_polls=3)
        process = await hypervisor.spawn(["--restful-uri", "tcp://localhost:5000"])
        states = [await hypervisor.query_state(5000) for _ in range(3)]
        assert states == [RestState.STARTING, RestState.STARTING, RestState.RUNNING]
        assert hypervisor.live_processes == [process]

    async def test_unknown_port(self):
        assert await FakeHypervisor().query_state(1) is None

    async def test_spawn_error(self):
        with pytest.raises(LaunchError):
            await FakeHypervisor(spawn_error=True).spawn([])

    async def test_kill_after_exit(self):
        process = await FakeHypervisor().spawn([])
        process.exit(0)
        with pytest.raises(ProcessLookupError):
            process.kill()
        assert await process.wait() == 0
