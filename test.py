"""
Tests for requestqueue
----------------------
Validates:
1. Concurrency bound and FIFO admission
2. Retry count and fixed backoff spacing
3. Hook delivery (success / error / retry) and silent hook-less failure
4. Configuration, delay parsing and the CLI

Run:
    pytest test.py
"""

import asyncio
import json
import os
import shlex
import sys

import pytest
from click.testing import CliRunner

from requestqueue import scheduler as scheduler_module
from requestqueue.cli import cli
from requestqueue.config import DEFAULT_CONFIG, get_config, parse_config
from requestqueue.errors import CommandFailedError, RetryExhaustedError
from requestqueue.jobs import run_command
from requestqueue.models import FAILED, PENDING, SUCCEEDED, Task, TaskHooks
from requestqueue.scheduler import Scheduler
from requestqueue.taskqueue import TaskQueue
from requestqueue.utils import parse_delay_to_seconds

BACKOFF = 0.05


@pytest.fixture(autouse=True)
def short_backoff(monkeypatch):
    monkeypatch.setattr(scheduler_module, "RETRY_DELAY_SECONDS", BACKOFF)


def always_fail(counter, key=0):
    async def work():
        counter[key] = counter.get(key, 0) + 1
        raise RuntimeError(f"boom {key}")
    return work


# ---------- Task queue ----------
def test_task_queue_is_fifo():
    q = TaskQueue()
    assert q.pop_front() is None
    for i in range(3):
        q.push(Task(index=i, work=None))
    assert len(q) == 3
    assert [q.pop_front().index for _ in range(3)] == [0, 1, 2]
    assert q.pop_front() is None
    assert len(q) == 0


# ---------- Construction ----------
@pytest.mark.parametrize("kwargs", [
    {"max_concurrent": 0},
    {"max_concurrent": -1},
    {"max_concurrent": 2.5},
    {"max_concurrent": True},
    {"retries": -1},
    {"retries": "3"},
])
def test_scheduler_rejects_bad_limits(kwargs):
    with pytest.raises(ValueError):
        Scheduler(**kwargs)


def test_scheduler_defaults():
    s = Scheduler()
    assert (s.max_concurrent, s.retries) == (3, 3)
    assert s.running_count == 0
    assert s.pending_count == 0
    assert s.idle


def test_enqueue_outside_event_loop_raises():
    s = Scheduler(verbose=False)

    async def work():
        return 1

    with pytest.raises(RuntimeError):
        s.enqueue(work)
    assert s.pending_count == 0


# ---------- Concurrency bound ----------
def test_running_count_never_exceeds_max_concurrent():
    delays = [0.03, 0.01, 0.05, 0.02, 0.01, 0.04, 0.02]
    active = {"now": 0, "peak": 0}
    seen_running = []
    done = []

    async def main():
        s = Scheduler(max_concurrent=2, retries=0, verbose=False)

        def make(i, delay):
            async def work():
                seen_running.append(s.running_count)
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
                await asyncio.sleep(delay)
                active["now"] -= 1
                return i
            return work

        for i, delay in enumerate(delays):
            s.enqueue(make(i, delay), on_success=done.append)
            assert s.running_count <= 2
        await s.join()
        assert s.idle

    asyncio.run(main())
    assert active["peak"] == 2
    assert max(seen_running) <= 2
    assert sorted(done) == list(range(len(delays)))


def test_admission_follows_enqueue_order():
    started = []

    async def main():
        s = Scheduler(max_concurrent=1, retries=0, verbose=False)

        def make(i):
            async def work():
                started.append(i)
                await asyncio.sleep(0.001 * (5 - i))
            return work

        indices = [s.enqueue(make(i)) for i in range(5)]
        assert indices == [0, 1, 2, 3, 4]
        assert s.running_count == 1
        assert s.pending_count == 4
        await s.join()

    asyncio.run(main())
    assert started == [0, 1, 2, 3, 4]


# ---------- Retry ----------
def test_always_failing_task_is_attempted_retries_plus_one_times():
    counter = {}
    errors, retried = [], []

    async def main():
        s = Scheduler(max_concurrent=1, retries=4, verbose=False)
        s.enqueue(always_fail(counter), on_error=errors.append, on_retry=retried.append)
        await s.join()

    asyncio.run(main())
    assert counter[0] == 5
    assert len(retried) == 4
    assert all(isinstance(e, RuntimeError) for e in retried)
    assert len(errors) == 1
    err = errors[0]
    assert isinstance(err, RetryExhaustedError)
    assert (err.index, err.retries) == (0, 4)
    assert str(err) == "Task 0 failed to load after 4 retries"
    assert isinstance(err.last_error, RuntimeError)
    assert err.__cause__ is err.last_error


def test_zero_retries_fails_after_single_attempt():
    counter = {}
    errors, retried = [], []

    async def main():
        s = Scheduler(retries=0, verbose=False)
        s.enqueue(always_fail(counter), on_error=errors.append, on_retry=retried.append)
        await s.join()

    asyncio.run(main())
    assert counter[0] == 1
    assert retried == []
    assert errors[0].retries == 0


def test_backoff_separates_attempts():
    starts = []

    async def main():
        loop = asyncio.get_running_loop()
        s = Scheduler(retries=3, verbose=False)

        async def work():
            starts.append(loop.time())
            raise ValueError("nope")

        s.enqueue(work)
        await s.join()

    asyncio.run(main())
    assert len(starts) == 4
    gaps = [b - a for a, b in zip(starts, starts[1:])]
    assert all(gap >= BACKOFF - 0.01 for gap in gaps)


def test_slot_is_held_between_attempts():
    counter = {}
    running_during_backoff = []

    async def main():
        s = Scheduler(max_concurrent=1, retries=2, verbose=False)
        s.enqueue(
            always_fail(counter),
            on_retry=lambda e: running_during_backoff.append((s.running_count, s.pending_count)),
        )

        async def second():
            return "second"

        s.enqueue(second)
        await s.join()

    asyncio.run(main())
    assert running_during_backoff == [(1, 1), (1, 1)]


# ---------- Hooks ----------
def test_each_task_fires_exactly_one_terminal_hook():
    calls = []

    async def main():
        s = Scheduler(max_concurrent=2, retries=1, verbose=False)
        for i in range(6):
            async def work(i=i):
                await asyncio.sleep(0.001)
                if i % 2:
                    raise KeyError(i)
                return i

            s.enqueue(
                work,
                TaskHooks(
                    on_success=lambda v, i=i: calls.append(("ok", i)),
                    on_error=lambda e, i=i: calls.append(("err", i)),
                    on_retry=lambda e, i=i: calls.append(("retry", i)),
                ),
            )
        await s.join()

    asyncio.run(main())
    for i in range(6):
        terminal = [c for c in calls if c[1] == i and c[0] in ("ok", "err")]
        assert terminal == [("err" if i % 2 else "ok", i)]
        assert calls.count(("retry", i)) == (1 if i % 2 else 0)


def test_keyword_hooks_override_hooks_record():
    seen = []

    async def main():
        s = Scheduler(verbose=False)

        async def work():
            return "value"

        hooks = TaskHooks(on_success=lambda v: seen.append(("record", v)))
        s.enqueue(work, hooks, on_success=lambda v: seen.append(("keyword", v)))
        await s.join()

    asyncio.run(main())
    assert seen == [("keyword", "value")]


def test_hookless_failure_is_silent_and_does_not_block_other_tasks():
    counter = {}
    results = []

    async def main():
        s = Scheduler(max_concurrent=1, retries=1, verbose=False)
        s.enqueue(always_fail(counter))

        async def ok():
            return "after"

        s.enqueue(ok, on_success=results.append)
        await s.join()
        assert s.idle

    asyncio.run(main())
    assert counter[0] == 2
    assert results == ["after"]


def test_unhandled_error_hook_only_sees_tasks_without_on_error():
    unhandled, handled = [], []

    async def main():
        s = Scheduler(retries=0, verbose=False, on_unhandled_error=unhandled.append)
        s.enqueue(always_fail({}, 0))
        s.enqueue(always_fail({}, 1), on_error=handled.append)
        await s.join()

    asyncio.run(main())
    assert [e.index for e in unhandled] == [0]
    assert [e.index for e in handled] == [1]


def test_raising_hook_does_not_stop_the_scheduler(capsys):
    results = []

    async def main():
        s = Scheduler(max_concurrent=1, retries=0, name="q")

        async def first():
            return 1

        async def second():
            return 2

        def broken(value):
            raise RuntimeError("hook broke")

        s.enqueue(first, on_success=broken)
        s.enqueue(second, on_success=results.append)
        await s.join()
        assert s.running_count == 0

    asyncio.run(main())
    assert results == [2]
    out = capsys.readouterr().out
    assert "[q] Task 0 on_success hook raised" in out


def test_terminal_transition_fires_hooks_once():
    fired = []

    async def main():
        s = Scheduler(retries=0, verbose=False)
        task = Task(
            index=7,
            work=None,
            hooks=TaskHooks(on_success=fired.append, on_error=fired.append),
        )
        assert task.state == PENDING
        s._running = 1
        s._complete(task, SUCCEEDED, "x")
        s._complete(task, FAILED, RetryExhaustedError(7, 0))
        assert task.state == SUCCEEDED
        assert s.running_count == 0

    asyncio.run(main())
    assert fired == ["x"]


def test_cancelled_work_frees_the_slot_for_queued_tasks():
    results = []

    async def main():
        s = Scheduler(max_concurrent=1, retries=0, verbose=False)

        async def cancelled():
            fut = asyncio.get_running_loop().create_future()
            fut.cancel()
            await fut

        async def after():
            return "after"

        s.enqueue(cancelled, on_error=results.append)
        s.enqueue(after, on_success=results.append)
        await asyncio.wait_for(s.join(), timeout=1)
        assert (s.running_count, s.pending_count) == (0, 0)

    asyncio.run(main())
    assert results == ["after"]


def test_join_returns_when_already_idle():
    async def main():
        s = Scheduler(verbose=False)
        await asyncio.wait_for(s.join(), timeout=1)

    asyncio.run(main())


def test_progress_lines_are_prefixed(capsys):
    async def main():
        s = Scheduler(retries=1, name="demo")
        s.enqueue(always_fail({}))
        await s.join()

    asyncio.run(main())
    out = capsys.readouterr().out
    assert "[demo] Task 0 start" in out
    assert "[demo] Task 0 retry for 1 times" in out
    assert "[demo] Task 0 failed to load after 1 retries" in out


def test_quiet_scheduler_prints_nothing(capsys):
    async def main():
        s = Scheduler(retries=1, verbose=False)
        s.enqueue(always_fail({}))
        await s.join()

    asyncio.run(main())
    assert capsys.readouterr().out == ""


# ---------- Scenarios ----------
def test_scenario_failing_task_blocks_single_slot_until_exhausted():
    events = []

    async def main():
        s = Scheduler(max_concurrent=1, retries=2, verbose=False)

        async def bad():
            events.append("attempt 0")
            raise RuntimeError("always")

        async def good():
            events.append("attempt 1")
            return "fine"

        s.enqueue(bad, on_error=lambda e: events.append(f"error 0: {e}"))
        s.enqueue(good, on_success=lambda v: events.append(f"success 1: {v}"))
        await s.join()

    asyncio.run(main())
    assert events == [
        "attempt 0",
        "attempt 0",
        "attempt 0",
        "error 0: Task 0 failed to load after 2 retries",
        "attempt 1",
        "success 1: fine",
    ]


def test_scenario_fourth_task_waits_for_a_free_slot():
    finished = set()
    fourth_saw = []
    peak = []

    async def main():
        s = Scheduler(max_concurrent=3, retries=3, verbose=False)
        delays = [0.05, 0.02, 0.08, 0.01]

        def make(i, delay):
            async def work():
                peak.append(s.running_count)
                if i == 3:
                    fourth_saw.append(set(finished))
                await asyncio.sleep(delay)
                return i
            return work

        for i, delay in enumerate(delays):
            s.enqueue(make(i, delay), on_success=finished.add)
        assert s.running_count == 3
        assert s.pending_count == 1
        await s.join()

    asyncio.run(main())
    assert max(peak) <= 3
    assert 1 in fourth_saw[0]
    assert len(fourth_saw[0]) < 3
    assert finished == {0, 1, 2, 3}


def test_scenario_flaky_task_succeeds_on_retry():
    attempts = {"n": 0}
    retried, succeeded = [], []
    elapsed = []

    async def main():
        loop = asyncio.get_running_loop()
        s = Scheduler(retries=1, verbose=False)

        async def flaky():
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise ConnectionError("transient")
            return f"attempt {attempts['n']}"

        started = loop.time()
        s.enqueue(flaky, on_retry=retried.append, on_success=succeeded.append)
        await s.join()
        elapsed.append(loop.time() - started)

    asyncio.run(main())
    assert len(retried) == 1
    assert isinstance(retried[0], ConnectionError)
    assert succeeded == ["attempt 2"]
    assert elapsed[0] >= BACKOFF - 0.01


# ---------- Config / utils ----------
def test_get_config_reads_environment_overrides():
    cfg = get_config({"REQUESTQUEUE_MAX_CONCURRENT": "5", "REQUESTQUEUE_RETRIES": " "})
    assert cfg["max_concurrent"] == "5"
    assert cfg["retries"] == DEFAULT_CONFIG["retries"]
    assert parse_config(cfg) == {"max_concurrent": 5, "retries": 3, "timeout_seconds": 20}


@pytest.mark.parametrize("cfg, message", [
    ({"max_concurrent": "zero"}, "max_concurrent must be an integer"),
    ({"max_concurrent": "0"}, "max_concurrent must be >= 1"),
    ({"retries": "-2"}, "retries must be >= 0"),
    ({"backoff": "2"}, "Allowed keys"),
])
def test_parse_config_rejects_bad_values(cfg, message):
    with pytest.raises(ValueError, match=message):
        parse_config(cfg)


@pytest.mark.parametrize("text, seconds", [
    ("20s", 20),
    ("1500ms", 1.5),
    ("1m30s", 90),
    ("0.5s", 0.5),
    ("2h", 7200),
    ("  5m ", 300),
])
def test_parse_delay_to_seconds(text, seconds):
    assert parse_delay_to_seconds(text) == pytest.approx(seconds)


@pytest.mark.parametrize("text", ["", "abc", "5", "0s", "10x"])
def test_parse_delay_rejects_bad_input(text):
    with pytest.raises(ValueError):
        parse_delay_to_seconds(text)


# ---------- Jobs ----------
def _py(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def test_run_command_returns_stdout():
    out = asyncio.run(run_command(_py("print(42)"), timeout=10, verbose=False))
    assert out == "42"


def test_run_command_failure_codes():
    with pytest.raises(CommandFailedError) as info:
        asyncio.run(run_command(_py("import sys; sys.exit(3)"), timeout=10, verbose=False))
    assert info.value.returncode == 3

    with pytest.raises(CommandFailedError) as info:
        asyncio.run(run_command("definitely-not-a-real-binary-xyz", verbose=False))
    assert info.value.returncode == 127

    with pytest.raises(CommandFailedError) as info:
        asyncio.run(run_command(_py("import time; time.sleep(5)"), timeout=1, verbose=False))
    assert info.value.returncode == 124


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process probing")
def test_run_command_kills_child_when_cancelled(tmp_path):
    pid_file = tmp_path / "pid"
    code = f"import os, time; open({str(pid_file)!r}, 'w').write(str(os.getpid())); time.sleep(30)"

    async def main():
        job = asyncio.ensure_future(run_command(_py(code), timeout=60, verbose=False))
        for _ in range(100):
            await asyncio.sleep(0.05)
            if pid_file.exists() and pid_file.read_text():
                break
        job.cancel()
        with pytest.raises(asyncio.CancelledError):
            await job

    asyncio.run(main())
    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


# ---------- CLI ----------
def _summary(output: str) -> dict:
    return json.loads(output.strip().splitlines()[-1])


def test_cli_demo_reports_outcomes():
    runner = CliRunner()
    result = runner.invoke(cli, [
        "demo", "--delay", "10ms", "--delay", "fail", "--delay", "20ms",
        "--max-concurrent", "2", "--retries", "1",
    ])
    assert result.exit_code == 0, result.output
    summary = _summary(result.output)
    assert summary == {"completed": 2, "failed": 1}
    assert "[RETRY] fail" in result.output
    assert "Task 1 failed to load after 1 retries" in result.output


def test_cli_demo_rejects_bad_delay():
    result = CliRunner().invoke(cli, ["demo", "--delay", "soon"])
    assert result.exit_code == 1
    assert "Invalid delay format" in result.output


def test_cli_run_exit_status_reflects_failures():
    runner = CliRunner()
    ok = runner.invoke(cli, ["run", "--cmd", _py("print('hi')"), "--quiet"])
    assert ok.exit_code == 0, ok.output
    assert _summary(ok.output)["completed"] == 1

    bad = runner.invoke(cli, [
        "run", "--cmd", _py("print('hi')"), "--cmd", _py("import sys; sys.exit(2)"),
        "--retries", "1", "--quiet",
    ])
    assert bad.exit_code == 1
    summary = _summary(bad.output)
    assert (summary["completed"], summary["failed"]) == (1, 1)


def test_cli_config_get_uses_environment(monkeypatch):
    monkeypatch.setenv("REQUESTQUEUE_RETRIES", "7")
    result = CliRunner().invoke(cli, ["config", "get"])
    assert result.exit_code == 0
    assert json.loads(result.output)["retries"] == "7"

    monkeypatch.setenv("REQUESTQUEUE_RETRIES", "many")
    result = CliRunner().invoke(cli, ["config", "get"])
    assert result.exit_code == 1
    assert "retries must be an integer" in result.output
