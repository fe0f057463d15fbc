"""CLI entry point and commands.

Provides the main CLI application with commands for:
- args: Print the hypervisor command line for the configured VM
- disk: Prepare a per-session copy of the master disk image
- run: Boot a session and attach the local terminal to its console
- relay: Run the allowlisted relay on its own
- drop-server: Serve the HTTP drop-folder upload endpoint
- backup-daemon: Run the git backup daemon (inside the guest)
- verify: Check guest isolation over SSH
- version: Show version information
"""

import asyncio
import shlex
import shutil
import signal
import sys
import uuid
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vmsandbox import __version__
from vmsandbox.exceptions import VmSandboxError
from vmsandbox.logging_config import configure_logging
from vmsandbox.settings import get_settings

app = typer.Typer(
    name="vmsandbox",
    help="Disposable VM sandbox for an autonomous coding assistant",
    add_completion=False,
    no_args_is_help=True,
)

console = Console(stderr=True)


@app.callback()
def main(
    log_level: Annotated[
        Optional[str],  # noqa: UP007
        typer.Option("--log-level", "-l", help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)"),
    ] = None,
) -> None:
    """Disposable VM sandbox for an autonomous coding assistant."""
    configure_logging(log_level.upper() if log_level else None)  # type: ignore[arg-type]


def _config_for(disk: Path):
    from vmsandbox.vm.models import VmConfig

    return VmConfig.from_settings(get_settings(), disk)


@app.command()
def args(
    disk: Annotated[
        Optional[Path],  # noqa: UP007
        typer.Option("--disk", "-d", help="Session disk copy (defaults to a placeholder under SESSIONS_DIR)"),
    ] = None,
) -> None:
    """Print the hypervisor command line for the configured VM."""
    from vmsandbox.vm.filesystem import reject_master_disk
    from vmsandbox.vm.lifecycle import VmLifecycleManager

    settings = get_settings()
    disk_path = disk or settings.sessions_dir / "SESSION_ID.img"
    try:
        reject_master_disk(disk_path, settings.master_disk_path)
    except VmSandboxError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1) from e
    config = _config_for(disk_path)
    command = [settings.hypervisor_path, *VmLifecycleManager(hypervisor=None).build_command(config)]
    typer.echo(shlex.join(command))


@app.command()
def disk(
    session_id: Annotated[
        Optional[str],  # noqa: UP007
        typer.Option("--session-id", "-s", help="Session id (random if omitted)"),
    ] = None,
) -> None:
    """Copy the master disk image into a writable per-session file."""
    from vmsandbox.vm.filesystem import prepare_session_disk

    settings = get_settings()
    try:
        path = prepare_session_disk(
            settings.master_disk_path,
            settings.sessions_dir,
            session_id or uuid.uuid4().hex[:12],
        )
    except VmSandboxError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1) from e
    typer.echo(str(path))


@app.command()
def run(
    disk: Annotated[
        Optional[Path],  # noqa: UP007
        typer.Option("--disk", "-d", help="Existing session disk (a fresh copy is made if omitted)"),
    ] = None,
    relay: Annotated[
        bool,
        typer.Option("--relay/--no-relay", help="Start the allowlisted relay for this session"),
    ] = True,
) -> None:
    """Boot a VM session and attach this terminal to its console.

    Console output goes to stdout; lines typed on stdin go to the guest.
    The VM is stopped when stdin closes or on Ctrl-C.
    """
    from vmsandbox.vm.filesystem import prepare_session_disk, reject_master_disk, remove_session_disk

    settings = get_settings()
    session_id = uuid.uuid4().hex[:12]
    fresh_disk = disk is None
    try:
        if disk is not None:
            reject_master_disk(disk, settings.master_disk_path)
        disk_path = disk or prepare_session_disk(
            settings.master_disk_path, settings.sessions_dir, session_id
        )
    except VmSandboxError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1) from e

    console.print(
        Panel(
            f"[bold green]Starting VM session[/bold green]\n"
            f"Disk: {disk_path}\n"
            f"CPUs: {settings.cpu_count}  Memory: {settings.memory_mb} MB\n"
            f"Drop folder: {settings.drop_folder} -> {settings.drop_mount_point}\n"
            f"Relay: {'port ' + str(settings.relay_host_port) if relay else 'disabled'}",
            title="🖥️  vmsandbox",
            border_style="green",
        )
    )

    try:
        asyncio.run(_run_session(_config_for(disk_path), relay))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
    except VmSandboxError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1) from e
    finally:
        if fresh_disk:
            remove_session_disk(disk_path)


async def _run_session(config, with_relay: bool) -> None:
    from vmsandbox.vm.lifecycle import VmLifecycleManager
    from vmsandbox.vm.remote_channel import RemoteRelay

    settings = get_settings()
    manager = VmLifecycleManager.from_settings(settings)
    relay = RemoteRelay.from_settings(settings) if with_relay else None

    async with manager.session(config, relay=relay) as session:
        bridge = session.console
        if bridge is None:
            return
        columns, lines = shutil.get_terminal_size()
        bridge.resize(columns, lines)

        async def pump_output() -> None:
            async for chunk in bridge.iter_output():
                sys.stdout.buffer.write(chunk)
                sys.stdout.buffer.flush()

        async def pump_input() -> None:
            while True:
                line = await asyncio.to_thread(sys.stdin.buffer.readline)
                if not line:
                    return
                await bridge.write(line.replace(b"\n", b"\r"))

        output_task = asyncio.create_task(pump_output())
        input_task = asyncio.create_task(pump_input())
        done, pending = await asyncio.wait({output_task, input_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            task.result()


@app.command("relay")
def relay_server(
    port: Annotated[
        Optional[int],  # noqa: UP007
        typer.Option("--port", "-p", help="Port to listen on (defaults to RELAY_HOST_PORT)"),
    ] = None,
) -> None:
    """Run the allowlisted relay until interrupted."""
    from vmsandbox.vm.remote_channel import RemoteRelay

    settings = get_settings()
    relay = RemoteRelay.from_settings(settings)
    if port is not None:
        relay.port = port

    entries = sorted(relay.allowlist.entries)
    console.print(
        Panel(
            f"[bold blue]Relay on 127.0.0.1:{relay.port}[/bold blue]\n"
            f"Allowlist: {', '.join(entries) if entries else '[red]empty (all denied)[/red]'}",
            title="🔀 Relay",
            border_style="blue",
        )
    )

    async def serve() -> None:
        await relay.start()
        try:
            await asyncio.Event().wait()
        finally:
            await relay.stop()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        console.print("[yellow]Relay stopped[/yellow]")


@app.command("drop-server")
def drop_server(
    host: Annotated[
        str,
        typer.Option("--host", "-h", help="Host to bind to"),
    ] = "127.0.0.1",
    port: Annotated[
        Optional[int],  # noqa: UP007
        typer.Option("--port", "-p", help="Port to bind to (defaults to DROP_HTTP_PORT)"),
    ] = None,
) -> None:
    """Serve the HTTP upload endpoint for the drop folder."""
    import uvicorn

    from vmsandbox.api.drop import create_drop_app

    settings = get_settings()
    bind_port = port or settings.drop_http_port
    console.print(
        Panel(
            f"[bold green]Drop server[/bold green]\n"
            f"Listening: http://{host}:{bind_port}/drop\n"
            f"Folder: {settings.drop_folder}",
            title="📥 Drop",
            border_style="green",
        )
    )
    uvicorn.run(create_drop_app(settings.drop_folder), host=host, port=bind_port, log_level="info")


@app.command("backup-daemon")
def backup_daemon(
    repo: Annotated[
        Path,
        typer.Argument(help="Repository to back up", exists=True, file_okay=False),
    ] = Path("."),
) -> None:
    """Snapshot the repository onto the backup branch until stopped (runs in the guest)."""
    from vmsandbox.guest.git_backup import GitBackupDaemon

    try:
        daemon = GitBackupDaemon.from_settings(get_settings(), repo.resolve())
    except VmSandboxError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1) from e

    async def serve() -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, daemon.request_stop)
        await daemon.start()

    try:
        asyncio.run(serve())
    except VmSandboxError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1) from e


@app.command()
def verify(
    port: Annotated[
        Optional[int],  # noqa: UP007
        typer.Option("--port", "-p", help="Forwarded SSH port (defaults to SSH_PORT)"),
    ] = None,
) -> None:
    """Check from inside a running guest that the host is unreachable."""
    from vmsandbox.vm.guest_control import SshControlChannel, verify_isolation

    settings = get_settings()
    channel = SshControlChannel(port or settings.ssh_port)
    try:
        report = asyncio.run(verify_isolation(channel, settings.drop_mount_point))
    except VmSandboxError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1) from e

    table = Table(title="Isolation Checks", show_header=True)
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_column("Detail", style="dim")
    for check in report.checks:
        result = "[green]PASS[/green]" if check.passed else "[red]FAIL[/red]"
        table.add_row(check.name, result, check.detail)
    console.print(table)

    if not report.all_checks_passed:
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show vmsandbox version information."""
    console.print(
        Panel(
            f"[bold]vmsandbox[/bold] v{__version__}\n"
            "Disposable VM sandbox for an autonomous coding assistant",
            title="🖥️  Version",
            border_style="blue",
        )
    )


# Entry point for: python -m vmsandbox.cli.main
if __name__ == "__main__":
    app()
