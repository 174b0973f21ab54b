"""Nodes backed by containers of a docker-compatible engine."""

from __future__ import annotations

from typing import Any

from kindprov.model import ClusterError, Node
from kindprov.process import Cmd, RunError, command, output_lines

# Applied to each node container for identification.
CLUSTER_LABEL_KEY = "io.x-k8s.kind.cluster"
# Applied to each node container for categorization by role.
NODE_ROLE_LABEL_KEY = "io.x-k8s.kind.role"

_IP_FORMAT = (
    "{{range .NetworkSettings.Networks}}"
    "{{.IPAddress}},{{.GlobalIPv6Address}}{{end}}"
)


class NodeCmd(Cmd):
    """A command run inside a node container through `<engine> exec`."""

    def __init__(self, engine: str, name_or_id: str, cmd: str, *args: str) -> None:
        super().__init__(cmd, *args)
        self.engine = engine
        self.name_or_id = name_or_id

    def run(self) -> None:
        """Run the command in the container; raise RunError on failure."""
        argv = ["exec", "--privileged"]
        if self.stdin is not None:
            argv.append("-i")
        for entry in self.env:
            argv.extend(["-e", entry])
        argv.extend([self.name_or_id, self.name, *self.args])
        host_cmd = command(self.engine, *argv)
        if self.stdin is not None:
            host_cmd.set_stdin(self.stdin)
        if self.stderr is not None:
            host_cmd.set_stderr(self.stderr)
        if self.stdout is not None:
            host_cmd.set_stdout(self.stdout)
        host_cmd.run()


class ContainerNode(Node):
    """A cluster node that is a container managed by engine."""

    def __init__(self, name: str, engine: str = "docker") -> None:
        self.name = name
        self.engine = engine

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"ContainerNode({self.name!r}, engine={self.engine!r})"

    def role(self) -> str:
        """Read the role label of the container."""
        cmd = command(
            self.engine,
            "inspect",
            "--format",
            f'{{{{ index .Config.Labels "{NODE_ROLE_LABEL_KEY}"}}}}',
            self.name,
        )
        try:
            lines = output_lines(cmd)
        except RunError as exc:
            raise ClusterError(f"failed to get role for node: {exc}") from exc
        if len(lines) != 1:
            raise ClusterError(
                f"failed to get role for node: output lines {len(lines)} != 1"
            )
        return lines[0]

    def ip(self) -> tuple[str, str]:
        """Return the container's IPv4 and IPv6 addresses."""
        cmd = command(self.engine, "inspect", "-f", _IP_FORMAT, self.name)
        try:
            lines = output_lines(cmd)
        except RunError as exc:
            raise ClusterError(f"failed to get container details: {exc}") from exc
        if len(lines) != 1:
            raise ClusterError(
                f"file should only be one line, got {len(lines)} lines"
            )
        ips = lines[0].split(",")
        if len(ips) != 2:
            raise ClusterError(
                f"container addresses should have 2 values, got {len(ips)} values"
            )
        return ips[0], ips[1]

    def command(self, command: str, *args: str) -> NodeCmd:
        """A command to run inside this node."""
        return NodeCmd(self.engine, self.name, command, *args)

    def serial_logs(self, writer: Any) -> None:
        """Write the container's own logs to writer."""
        (
            command(self.engine, "logs", self.name)
            .set_stdout(writer)
            .set_stderr(writer)
            .run()
        )