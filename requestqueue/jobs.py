import asyncio
import shlex
import subprocess

from .errors import CommandFailedError


async def sleep_for(seconds: float, verbose: bool = True) -> float:
    """Wait `seconds`, report it, and return the seconds waited."""
    await asyncio.sleep(seconds)
    if verbose:
        print(f"sleep for {seconds:g} seconds")
    return seconds


async def fail(reason: str = "rejected"):
    raise RuntimeError(reason)


async def run_command(cmd: str, timeout: float = 20, verbose: bool = True) -> str:
    """Run `cmd` without a shell and return its stdout.

    Non-zero exit, timeout (124) and missing executable (127) all raise
    CommandFailedError so the scheduler treats them as a failed attempt.
    """
    args = shlex.split(cmd, posix=(not subprocess._mswindows))
    if not args:
        raise ValueError("Command cannot be empty.")

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise CommandFailedError(cmd, 127, f"Command not found: {args[0]}")

    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        raise CommandFailedError(cmd, 124, f"timed out after {timeout:g}s")
    finally:
        # timed out or cancelled: the child must not outlive the attempt
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    stdout = out.decode(errors="replace").strip()
    stderr = err.decode(errors="replace").strip()
    if verbose:
        if stdout:
            print(stdout)
        if stderr:
            print(stderr)
    if proc.returncode != 0:
        raise CommandFailedError(cmd, proc.returncode, stderr)
    return stdout
