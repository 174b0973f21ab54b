"""Node provider that manages cluster nodes as docker containers."""

from __future__ import annotations

import csv
import io
import json
import logging
import os
from typing import Any, Callable, Sequence

from kindprov.common import (
    API_SERVER_INTERNAL_PORT,
    AggregateError,
    aggregate_concurrent,
    collect_logs as collect_node_logs,
    file_on_host,
    until_error_concurrent,
)
from kindprov.container_node import CLUSTER_LABEL_KEY, ContainerNode
from kindprov.docker_images import ensure_node_images
from kindprov.docker_network import FIXED_NETWORK_NAME, ensure_network
from kindprov.docker_provision import cluster_has_implicit_load_balancer, plan_creation
from kindprov.model import (
    Cluster,
    ClusterError,
    Node,
    Provider,
    ProviderInfo,
    Status,
)
from kindprov.nodeutils import api_server_endpoint_node
from kindprov.process import Cmd, RunError, command, output, output_lines

_log = logging.getLogger(__name__)

_ENGINE = "docker"
_NETWORK_ENV = "KIND_EXPERIMENTAL_DOCKER_NETWORK"

DumpDir = Callable[[Node, str, str], None]


def _join_host_port(host: str, port: object) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def provider_info_from_docker_info(raw: Any) -> ProviderInfo:
    """Build ProviderInfo from the JSON printed by `docker info --format '{{json .}}'`."""
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise ClusterError(f"failed to decode docker info: {exc}") from exc
    if not isinstance(data, dict):
        raise ClusterError("failed to decode docker info: not an object")
    info = ProviderInfo(cgroup2=data.get("CgroupVersion") == "2")
    # With no cgroup driver the limit flags are meaningless and count as false.
    if data.get("CgroupDriver") != "none":
        info.supports_memory_limit = bool(data.get("MemoryLimit"))
        info.supports_pids_limit = bool(data.get("PidsLimit"))
        info.supports_cpu_shares = bool(data.get("CPUShares"))
    for option in data.get("SecurityOptions") or []:
        # An option looks like "name=seccomp,profile=default" or "name=rootless".
        try:
            rows = list(csv.reader(io.StringIO(str(option))))
        except csv.Error as exc:
            raise ClusterError(f"failed to parse security option: {exc}") from exc
        if any("name=rootless" in row for row in rows):
            info.rootless = True
    return info


class DockerProvider(Provider):
    """Provides cluster nodes by running `docker ...` on the host."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        load_balancer_image: str | None = None,
        dump_dir: DumpDir | None = None,
    ) -> None:
        self.logger = logger or _log
        self.load_balancer_image = load_balancer_image
        self._dump_dir = dump_dir
        self._info: ProviderInfo | None = None

    def __str__(self) -> str:
        return _ENGINE

    def provision(self, status: Status, cfg: Cluster) -> None:
        """Pull images, ensure the network and create every node container."""
        if cluster_has_implicit_load_balancer(cfg) and not self.load_balancer_image:
            raise ClusterError(
                "no load balancer image configured for a cluster "
                "with multiple control plane nodes"
            )
        ensure_node_images(self.logger, status, cfg)

        network_name = FIXED_NETWORK_NAME
        override = os.environ.get(_NETWORK_ENV, "")
        if override:
            self.logger.warning(
                "WARNING: Overriding docker network due to %s", _NETWORK_ENV
            )
            self.logger.warning("WARNING: Here be dragons! This is not supported currently.")
            network_name = override
        try:
            ensure_network(network_name)
        except ClusterError as exc:
            raise ClusterError(f"failed to ensure docker network: {exc}") from exc

        icons = "\U0001f4e6 " * len(cfg.nodes)
        status.start(f"Preparing nodes {icons}")
        success = False
        try:
            creators = plan_creation(cfg, network_name, self.load_balancer_image or "")
            until_error_concurrent(creators)
            success = True
        finally:
            status.end(success)

    def list_clusters(self) -> list[str]:
        """Sorted names of clusters that have node containers."""
        cmd = command(
            _ENGINE,
            "ps",
            "-a",
            "--filter",
            f"label={CLUSTER_LABEL_KEY}",
            "--format",
            f'{{{{.Label "{CLUSTER_LABEL_KEY}"}}}}',
        )
        try:
            lines = output_lines(cmd)
        except RunError as exc:
            raise ClusterError(f"failed to list clusters: {exc}") from exc
        return sorted(set(lines))

    def list_nodes(self, cluster: str) -> list[Node]:
        """Node containers of the named cluster, running or not."""
        cmd = command(
            _ENGINE,
            "ps",
            "-a",
            "--filter",
            f"label={CLUSTER_LABEL_KEY}={cluster}",
            "--format",
            "{{.Names}}",
        )
        try:
            lines = output_lines(cmd)
        except RunError as exc:
            raise ClusterError(f"failed to list clusters: {exc}") from exc
        return [ContainerNode(name, _ENGINE) for name in lines]

    def delete_nodes(self, nodes: Sequence[Node]) -> None:
        """Force-remove the node containers and their volumes."""
        if not nodes:
            return
        try:
            command(_ENGINE, "rm", "-f", "-v", *(str(n) for n in nodes)).run()
        except RunError as exc:
            raise ClusterError(f"failed to delete nodes: {exc}") from exc

    def _endpoint_node(self, cluster: str) -> Node:
        try:
            all_nodes = self.list_nodes(cluster)
        except ClusterError as exc:
            raise ClusterError(f"failed to list nodes: {exc}") from exc
        try:
            return api_server_endpoint_node(all_nodes)
        except ClusterError as exc:
            raise ClusterError(f"failed to get api server endpoint: {exc}") from exc

    def get_api_server_endpoint(self, cluster: str) -> str:
        """Host address and port where the cluster's API server is published."""
        node = self._endpoint_node(cluster)

        # A desktop port label, when present, names the endpoint directly.
        label = f"desktop.docker.io/ports/{API_SERVER_INTERNAL_PORT}/tcp"
        cmd = command(
            _ENGINE, "inspect", "--format", f'{{{{ index .Config.Labels "{label}" }}}}', str(node)
        )
        try:
            lines = output_lines(cmd)
        except RunError as exc:
            raise ClusterError(f"failed to get api server port: {exc}") from exc
        if len(lines) == 1 and lines[0]:
            return lines[0]

        fmt = (
            '{{ with (index (index .NetworkSettings.Ports "'
            + f"{API_SERVER_INTERNAL_PORT}/tcp"
            + '") 0) }}{{ printf "%s\t%s" .HostIp .HostPort }}{{ end }}'
        )
        try:
            lines = output_lines(command(_ENGINE, "inspect", "--format", fmt, str(node)))
        except RunError as exc:
            raise ClusterError(f"failed to get api server port: {exc}") from exc
        if len(lines) != 1:
            raise ClusterError(
                f"network details should only be one line, got {len(lines)} lines"
            )
        parts = lines[0].split("\t")
        if len(parts) != 2:
            raise ClusterError(
                f"network details should only be two parts, got {len(parts)}"
            )
        return _join_host_port(parts[0], parts[1])

    def get_api_server_internal_endpoint(self, cluster: str) -> str:
        """API server endpoint on the node network, addressed by node name."""
        node = self._endpoint_node(cluster)
        return _join_host_port(str(node), API_SERVER_INTERNAL_PORT)

    def collect_logs(self, dir: str, nodes: Sequence[Node]) -> None:
        """Populate dir with docker info and per-node logs and inspect output."""

        def exec_to_path(cmd: Cmd, path: str) -> Callable[[], None]:
            def run() -> None:
                with file_on_host(path) as f:
                    cmd.set_stdout(f).set_stderr(f).run()

            return run

        def serial_logs(node: Node, path: str) -> Callable[[], None]:
            def run() -> None:
                with file_on_host(os.path.join(path, "serial.log")) as f:
                    node.serial_logs(f)

            return run

        def node_logs(node: Node, path: str) -> Callable[[], None]:
            return lambda: collect_node_logs(node, path)

        funcs: list[Callable[[], None]] = [
            exec_to_path(command(_ENGINE, "info"), os.path.join(dir, "docker-info.txt"))
        ]
        errors: list[BaseException] = []
        for node in nodes:
            name = str(node)
            path = os.path.join(dir, name)
            if self._dump_dir is not None:
                try:
                    self._dump_dir(node, "/var/log", path)
                except (ClusterError, OSError) as exc:
                    errors.append(exc)
            funcs += [
                node_logs(node, path),
                exec_to_path(
                    command(_ENGINE, "inspect", name), os.path.join(path, "inspect.json")
                ),
                serial_logs(node, path),
            ]
        try:
            aggregate_concurrent(funcs)
        except AggregateError as exc:
            errors.append(exc)
        if errors:
            raise AggregateError(errors)

    def info(self) -> ProviderInfo:
        """Capabilities of the docker host, read once and then cached."""
        if self._info is None:
            try:
                raw = output(command(_ENGINE, "info", "--format", "{{json .}}"))
            except RunError as exc:
                raise ClusterError(f"failed to get docker info: {exc}") from exc
            self._info = provider_info_from_docker_info(raw)
        return self._info