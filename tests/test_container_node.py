import io
import subprocess
from unittest.mock import patch

import pytest

from kindprov.container_node import (
    NODE_ROLE_LABEL_KEY,
    ContainerNode,
    NodeCmd,
)
from kindprov.model import ClusterError
from kindprov.process import RunError


def make_runner(handler):
    calls = []

    def fake(argv, **kwargs):
        calls.append((list(argv), kwargs))
        rc, out = handler(list(argv), kwargs)
        return subprocess.CompletedProcess(argv, rc, out, b"")

    return fake, calls


def _echo_argv(argv, kwargs):
    stdin = kwargs.get("input") or b""
    return 0, "\n".join(argv).encode() + b"\n" + stdin


def test_node_cmd_builds_exec_argv_with_stdin_and_env():
    fake, _ = make_runner(_echo_argv)
    node = ContainerNode("kind-control-plane")
    buf = io.BytesIO()
    with patch("subprocess.run", fake):
        node.command("ls", "-l").set_env("A=1", "B=2").set_stdin("data").set_stdout(
            buf
        ).run()
    assert buf.getvalue().split(b"\n") == [
        b"docker", b"exec", b"--privileged", b"-i",
        b"-e", b"A=1", b"-e", b"B=2",
        b"kind-control-plane", b"ls", b"-l",
        b"data",
    ]


def test_node_cmd_without_stdin_has_no_interactive_flag():
    fake, _ = make_runner(_echo_argv)
    node = ContainerNode("n1", engine="podman")
    buf = io.BytesIO()
    with patch("subprocess.run", fake):
        node.command("true").set_stdout(buf).run()
    assert buf.getvalue() == b"podman\nexec\n--privileged\nn1\ntrue\n"


def test_node_cmd_stdout_is_written():
    fake, _ = make_runner(lambda argv, kw: (0, b"hello\n"))
    buf = io.BytesIO()
    with patch("subprocess.run", fake):
        ContainerNode("n1").command("echo", "hello").set_stdout(buf).run()
    assert buf.getvalue() == b"hello\n"


def test_node_cmd_failure_raises_run_error():
    fake, _ = make_runner(lambda argv, kw: (1, b"boom"))
    with patch("subprocess.run", fake):
        with pytest.raises(RunError):
            ContainerNode("n1").command("false").run()


def test_command_returns_node_cmd_with_fields():
    cmd = ContainerNode("n1", engine="podman").command("cat", "/kind/version")
    assert isinstance(cmd, NodeCmd)
    assert (cmd.engine, cmd.name_or_id, cmd.name, cmd.args) == (
        "podman", "n1", "cat", ["/kind/version"],
    )


def test_role_reads_label():
    fake, calls = make_runner(lambda argv, kw: (0, b"worker\n"))
    with patch("subprocess.run", fake):
        assert ContainerNode("n1").role() == "worker"
    argv = calls[0][0]
    assert argv[:3] == ["docker", "inspect", "--format"]
    assert NODE_ROLE_LABEL_KEY in argv[3]
    assert argv[-1] == "n1"


def test_role_wrong_line_count_raises():
    fake, _ = make_runner(lambda argv, kw: (0, b"a\nb\n"))
    with patch("subprocess.run", fake):
        with pytest.raises(ClusterError, match="output lines 2 != 1"):
            ContainerNode("n1").role()


def test_role_command_failure_raises():
    fake, _ = make_runner(lambda argv, kw: (1, b""))
    with patch("subprocess.run", fake):
        with pytest.raises(ClusterError, match="failed to get role for node"):
            ContainerNode("n1").role()


def test_ip_splits_addresses():
    fake, _ = make_runner(lambda argv, kw: (0, b"172.18.0.2,fc00::2\n"))
    with patch("subprocess.run", fake):
        assert ContainerNode("n1").ip() == ("172.18.0.2", "fc00::2")


def test_ip_with_wrong_number_of_values_raises():
    fake, _ = make_runner(lambda argv, kw: (0, b"172.18.0.2\n"))
    with patch("subprocess.run", fake):
        with pytest.raises(ClusterError, match="should have 2 values"):
            ContainerNode("n1").ip()


def test_serial_logs_writes_output():
    fake, calls = make_runner(lambda argv, kw: (0, b"booting\n"))
    buf = io.BytesIO()
    with patch("subprocess.run", fake):
        ContainerNode("n1").serial_logs(buf)
    assert calls[0][0] == ["docker", "logs", "n1"]
    assert buf.getvalue() == b"booting\n"


def test_str_is_name():
    assert str(ContainerNode("kind-worker2")) == "kind-worker2"