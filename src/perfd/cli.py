"""CLI commands for perfd."""

import click

from perfd.samples import MetricFamily


def _run_client(action):
    """Run ``action(client)`` against the daemon socket and return its result.

    Exits with status 1 if the daemon is unreachable or answers with an error.
    """
    import asyncio

    from perfd.config import Config
    from perfd.socket_client import SocketClient

    config = Config.load()

    async def run():
        async with SocketClient(config.socket_path) as client:
            return await action(client)

    try:
        response = asyncio.run(run())
    except FileNotFoundError:
        click.echo("Error: daemon is not running (no socket)", err=True)
        raise SystemExit(1)
    except (ConnectionError, asyncio.TimeoutError) as e:
        click.echo(f"Error: daemon unreachable: {e}", err=True)
        raise SystemExit(1)

    if response.get("type") == "error":
        click.echo(f"Error: {response['error']}", err=True)
        raise SystemExit(1)
    return response


@click.group()
@click.version_option(package_name="perfd")
def main() -> None:
    """Sample CPU, network and memory usage of running processes."""
    pass


@main.command()
def daemon() -> None:
    """Run the profiling daemon in the foreground."""
    import asyncio

    from perfd.daemon import run_daemon

    try:
        asyncio.run(run_daemon())
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@main.command()
def status() -> None:
    """Quick health check."""
    from perfd.config import Config

    config = Config.load()

    pid = config.pid_path.read_text().strip() if config.pid_path.exists() else None
    click.echo(f"PID file: {pid or 'none'}")
    if not config.socket_path.exists():
        click.echo("Daemon: stopped")
        return

    response = _run_client(lambda client: client.status())
    click.echo(f"Daemon: {'running' if response['running'] else 'idle'}")

    subjects = response["subjects"]
    click.echo(f"Monitored: {', '.join(str(s) for s in subjects) if subjects else 'none'}")
    counts = ", ".join(f"{family}={count}" for family, count in response["samples"].items())
    click.echo(f"Samples: {counts}")

    click.echo(f"\n{'Sampler':24}  {'Ticks':>8}  {'Failures':>8}")
    click.echo("-" * 44)
    for sampler in response["samplers"]:
        click.echo(f"{sampler['name']:24}  {sampler['ticks']:>8}  {sampler['failures']:>8}")


@main.group()
def monitor() -> None:
    """Add or remove monitored processes."""
    pass


@monitor.command("start")
@click.argument("pid", type=int)
def monitor_start(pid: int) -> None:
    """Start sampling PID."""
    from perfd import logging as console

    response = _run_client(lambda client: client.start_monitoring(pid))
    if response["changed"]:
        console.monitoring_started(pid)
    else:
        click.echo(f"PID {pid} is already monitored")


@monitor.command("stop")
@click.argument("pid", type=int)
def monitor_stop(pid: int) -> None:
    """Stop sampling PID."""
    from perfd import logging as console

    response = _run_client(lambda client: client.stop_monitoring(pid))
    if response["changed"]:
        console.monitoring_stopped(pid)
    else:
        click.echo(f"PID {pid} is not monitored")


@main.command()
@click.argument("family", type=click.Choice([f.value for f in MetricFamily]))
@click.option("--pid", "-p", type=int, default=None, help="Only this process (default: all)")
@click.option("--last", "-l", "seconds", type=float, default=10.0, help="Seconds of history")
@click.option("--format", "-f", "fmt", type=click.Choice(["table", "json"]), default="table")
def query(family: str, pid: int | None, seconds: float, fmt: str) -> None:
    """Show recent samples of FAMILY."""
    import json

    from perfd.clock import seconds_to_nanos
    from perfd.formatting import format_age, format_payload, with_cpu_usage

    async def fetch(client):
        now = (await client.request({"type": "now"}))["timestamp"]
        response = await client.query(
            family, pid=pid, from_ts=now - seconds_to_nanos(seconds), to_ts=now
        )
        response["now"] = now
        return response

    response = _run_client(fetch)
    samples = response["samples"]

    if fmt == "json":
        click.echo(json.dumps(samples, indent=2))
        return

    if not samples:
        click.echo(f"No {family} samples in the last {seconds:g}s.")
        return

    now = response["now"]
    header = f"{'PID':>7}  {'Age':>9}  "
    if family == "cpu":
        header += f"{'Usage':>7}  "
    click.echo(header + "Value")
    click.echo("-" * 75)

    rows = with_cpu_usage(samples) if family == "cpu" else [(s, None) for s in samples]
    for sample, usage in rows:
        line = f"{sample['subject']:>7}  {format_age(sample['timestamp'], now):>9}  "
        if family == "cpu":
            line += f"{usage:>6.1f}%  " if usage is not None else f"{'-':>7}  "
        click.echo(line + format_payload(family, sample["payload"]))


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from perfd.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[sampling]")
    click.echo(f"  cpu_interval = {cfg.sampling.cpu_interval}")
    click.echo(f"  network_interval = {cfg.sampling.network_interval}")
    click.echo(f"  memory_interval = {cfg.sampling.memory_interval}")
    click.echo()
    click.echo("[cache]")
    click.echo(f"  capacity = {cfg.cache.capacity}")
    click.echo()
    click.echo("[procfs]")
    click.echo(f"  proc_root = {cfg.procfs.proc_root}")
    click.echo(f"  clock_ticks = {cfg.procfs.clock_ticks}")
    click.echo()
    click.echo("[network]")
    click.echo(f"  connection_tables = {cfg.network.connection_tables}")
    click.echo(f"  traffic_stats = {cfg.network.traffic_stats}")
    click.echo(f"  listen_filter = {cfg.network.listen_filter}")
    click.echo()
    click.echo("[memory]")
    click.echo(f"  command = {cfg.memory.command}")
    click.echo(f"  command_timeout = {cfg.memory.command_timeout}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from perfd.config import Config

    cfg = Config.load()

    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from perfd.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


if __name__ == "__main__":
    main()
