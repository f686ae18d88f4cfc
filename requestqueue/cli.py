import asyncio
import functools
import json
import click

from .config import get_config, parse_config
from .jobs import fail, run_command, sleep_for
from .models import TaskHooks
from .scheduler import Scheduler
from .utils import parse_delay_to_seconds

# 3 slots, one rejected task among sleeps of different lengths
DEMO_WORKLOAD = ("1s", "10s", "3s", "fail", "1500ms", "1500ms", "1500ms")


@click.group(help="requestqueue: bounded-concurrency async task runner with retries")
def cli():
    pass


def _limits(max_concurrent=None, retries=None, timeout=None):
    cfg = get_config()
    for key, value in (
        ("max_concurrent", max_concurrent),
        ("retries", retries),
        ("timeout_seconds", timeout),
    ):
        if value is not None:
            cfg[key] = str(value)
    return parse_config(cfg)


def _outcome_hooks(label, summary):
    def on_success(value):
        summary["completed"] += 1
        click.secho(f"[OK] {label} -> {value!r}", fg="green")

    def on_error(err):
        summary["failed"] += 1
        click.secho(f"[FAILED] {label}: {err}", fg="red")

    def on_retry(err):
        click.secho(f"[RETRY] {label}: {err}", fg="yellow")

    return TaskHooks(on_success=on_success, on_error=on_error, on_retry=on_retry)


async def _run_batch(items, *, max_concurrent, retries, verbose):
    """Push (label, work) pairs through one scheduler and wait for all of them."""
    summary = {"completed": 0, "failed": 0}
    scheduler = Scheduler(max_concurrent=max_concurrent, retries=retries, verbose=verbose)
    for label, work in items:
        scheduler.enqueue(work, _outcome_hooks(label, summary))
    await scheduler.join()
    return summary


# ---------- Demo ----------
@cli.command("demo", help="Run sample sleep tasks (use 'fail' for a task that always fails)")
@click.option("--delay", "delays", multiple=True,
              help="Task delay like 1s, 1500ms, 1m30s, or 'fail'. Repeatable.")
@click.option("--max-concurrent", type=int, default=None, help="Override max concurrent tasks")
@click.option("--retries", type=int, default=None, help="Override retry count")
@click.option("--quiet", is_flag=True, help="Hide scheduler progress lines")
def demo_cmd(delays, max_concurrent, retries, quiet):
    try:
        limits = _limits(max_concurrent, retries)
        items = []
        for token in delays or DEMO_WORKLOAD:
            if token.strip().lower() == "fail":
                items.append((token, functools.partial(fail, "aa")))
            else:
                seconds = parse_delay_to_seconds(token)
                items.append((token, functools.partial(sleep_for, seconds, not quiet)))
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)

    click.secho(
        f"Running {len(items)} task(s) (max_concurrent={limits['max_concurrent']}, "
        f"retries={limits['retries']})",
        fg="cyan",
    )
    summary = asyncio.run(_run_batch(
        items,
        max_concurrent=limits["max_concurrent"],
        retries=limits["retries"],
        verbose=not quiet,
    ))
    click.echo(json.dumps(summary))


# ---------- Commands ----------
@cli.command("run", help="Run shell commands through the scheduler")
@click.option("--cmd", "commands", multiple=True, required=True, help="Command to execute. Repeatable.")
@click.option("--max-concurrent", type=int, default=None, help="Override max concurrent tasks")
@click.option("--retries", type=int, default=None, help="Override retry count")
@click.option("--timeout", type=int, default=None, help="Per-attempt timeout in seconds")
@click.option("--quiet", is_flag=True, help="Hide scheduler progress and command output")
def run_cmd(commands, max_concurrent, retries, timeout, quiet):
    try:
        limits = _limits(max_concurrent, retries, timeout)
        if any(not c or not c.strip() for c in commands):
            raise ValueError("Command cannot be empty.")
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)

    items = [
        (c, functools.partial(run_command, c, limits["timeout_seconds"], not quiet))
        for c in commands
    ]
    summary = asyncio.run(_run_batch(
        items,
        max_concurrent=limits["max_concurrent"],
        retries=limits["retries"],
        verbose=not quiet,
    ))
    click.echo(json.dumps(summary))
    if summary["failed"]:
        raise SystemExit(1)


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
def config_get():
    cfg = get_config()
    try:
        parse_config(cfg)
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    click.echo(json.dumps(cfg, indent=2, sort_keys=True))


def main():
    cli()
