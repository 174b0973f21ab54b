"""Running host commands and waiting for container logs."""

from __future__ import annotations

import io
import queue
import re
import subprocess
import threading
import time
from typing import Any, Iterable, Pattern

from kindprov.model import ClusterError

SYSTEMD_MULTI_USER_PATTERN = re.compile(
    "Reached target .*Multi-User System.*|detected cgroup v1"
)
LOG_WAIT_TIMEOUT = 30.0

_EOF = object()


class RunError(ClusterError):
    """A command failed; carries the command line and its combined output."""

    def __init__(self, command: list[str], output: bytes, inner: Any) -> None:
        self.command = list(command)
        self.output = output
        self.inner = inner
        super().__init__(
            f'command "{" ".join(self.command)}" failed with error: {inner}'
        )


def _read_input(stdin: Any) -> bytes:
    if isinstance(stdin, bytes):
        return stdin
    if isinstance(stdin, str):
        return stdin.encode()
    data = stdin.read()
    return data.encode() if isinstance(data, str) else data


def _write(writer: Any, data: bytes) -> None:
    if not data:
        return
    if isinstance(writer, io.TextIOBase):
        writer.write(data.decode("utf-8", "replace"))
    else:
        writer.write(data)


class Cmd:
    """A command on the host, configured fluently and then run."""

    def __init__(self, name: str, *args: str) -> None:
        self.name = name
        self.args = list(args)
        self.env: list[str] = []
        self.stdin: Any = None
        self.stdout: Any = None
        self.stderr: Any = None

    def set_env(self, *args: str) -> Cmd:
        """Replace the environment with KEY=VALUE entries."""
        self.env = list(args)
        return self

    def set_stdin(self, stdin: Any) -> Cmd:
        self.stdin = stdin
        return self

    def set_stdout(self, stdout: Any) -> Cmd:
        self.stdout = stdout
        return self

    def set_stderr(self, stderr: Any) -> Cmd:
        self.stderr = stderr
        return self

    def run(self) -> None:
        """Run the command; raise RunError if it cannot start or fails."""
        argv = [self.name, *self.args]
        env = None
        if self.env:
            env = {}
            for entry in self.env:
                key, _, value = entry.partition("=")
                env[key] = value
        kwargs: dict[str, Any] = {
            "stdout": subprocess.PIPE,
            "stderr": subprocess.PIPE,
            "env": env,
            "check": False,
        }
        if self.stdin is None:
            kwargs["stdin"] = subprocess.DEVNULL
        else:
            kwargs["input"] = _read_input(self.stdin)
        try:
            proc = subprocess.run(argv, **kwargs)
        except OSError as exc:
            raise RunError(argv, b"", exc) from exc
        if self.stdout is not None:
            _write(self.stdout, proc.stdout)
        if self.stderr is not None:
            _write(self.stderr, proc.stderr)
        if proc.returncode != 0:
            raise RunError(
                argv, proc.stdout + proc.stderr, f"exit status {proc.returncode}"
            )


def command(name: str, *args: str) -> Cmd:
    """Create a host command."""
    return Cmd(name, *args)


def output(cmd: Any) -> bytes:
    """Run cmd and return what it wrote to stdout."""
    buf = io.BytesIO()
    cmd.set_stdout(buf)
    cmd.run()
    return buf.getvalue()


def output_lines(cmd: Any) -> list[str]:
    """Run cmd and return its stdout split into lines."""
    text = output(cmd).decode("utf-8", "replace")
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def wait_until_log_matches(
    lines: Iterable[Any], pattern: str | Pattern[str], timeout: float
) -> str:
    """Return the first line matching pattern; raise if none does before timeout."""
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    no_match = ClusterError(f'could not find a line that matches "{regex.pattern}"')
    items: queue.Queue[Any] = queue.Queue()

    def pump() -> None:
        try:
            for line in lines:
                items.put(line)
        except (OSError, ValueError):
            pass
        finally:
            items.put(_EOF)

    threading.Thread(target=pump, daemon=True).start()
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise no_match
        try:
            item = items.get(timeout=remaining)
        except queue.Empty:
            raise no_match from None
        if item is _EOF:
            raise no_match
        text = item.decode("utf-8", "replace") if isinstance(item, bytes) else item
        text = text.rstrip("\r\n")
        if regex.search(text):
            return text


def run_container(
    engine: str,
    name: str,
    args: Iterable[str],
    wait_until: str | Pattern[str] | None = None,
) -> None:
    """Run `engine run --name name args...`, optionally waiting for a log line."""
    try:
        command(engine, "run", "--name", name, *args).run()
    except RunError as exc:
        raise ClusterError(f"{engine} run error: {exc}") from exc
    if wait_until is None:
        return
    argv = [engine, "logs", "-f", name]
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError as exc:
        raise ClusterError(f"failed to run {argv}: {exc}") from exc
    try:
        wait_until_log_matches(proc.stdout, wait_until, LOG_WAIT_TIMEOUT)
    finally:
        proc.kill()
        proc.wait()
        if proc.stdout is not None:
            proc.stdout.close()