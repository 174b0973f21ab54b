"""Core data types shared by the node providers: cluster config, nodes, status."""

from __future__ import annotations

import copy as _copy
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from kindprov.process import Cmd


class ClusterError(Exception):
    """Base error for cluster and provider operations."""


class NodeRole(str, Enum):
    """Role of a node within a cluster."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"
    EXTERNAL_LOAD_BALANCER = "external-load-balancer"

    def __str__(self) -> str:
        return self.value


class ClusterIPFamily(str, Enum):
    """IP family used by the cluster network."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"
    DUAL_STACK = "dual"

    def __str__(self) -> str:
        return self.value


class MountPropagation(str, Enum):
    """Mount propagation mode for an extra mount."""

    NONE = "None"
    HOST_TO_CONTAINER = "HostToContainer"
    BIDIRECTIONAL = "Bidirectional"

    def __str__(self) -> str:
        return self.value


class PortMappingProtocol(str, Enum):
    """Transport protocol of a port mapping."""

    TCP = "TCP"
    UDP = "UDP"
    SCTP = "SCTP"

    def __str__(self) -> str:
        return self.value


@dataclass
class Mount:
    """A host path mounted into a node container."""

    host_path: str = ""
    container_path: str = ""
    readonly: bool = False
    selinux_relabel: bool = False
    propagation: MountPropagation = MountPropagation.NONE


@dataclass
class PortMapping:
    """A container port published on the host."""

    container_port: int = 0
    host_port: int = 0
    listen_address: str = ""
    protocol: str = ""


@dataclass
class ClusterNode:
    """Configuration of a single node in a cluster."""

    role: NodeRole = NodeRole.CONTROL_PLANE
    image: str = ""
    extra_mounts: list[Mount] = field(default_factory=list)
    extra_port_mappings: list[PortMapping] = field(default_factory=list)

    def copy(self) -> ClusterNode:
        """Return a deep copy that can be modified independently."""
        return _copy.deepcopy(self)


@dataclass
class Networking:
    """Network settings of a cluster."""

    ip_family: ClusterIPFamily = ClusterIPFamily.IPV4
    api_server_port: int = 0
    api_server_address: str = ""
    pod_subnet: str = ""
    service_subnet: str = ""


@dataclass
class Cluster:
    """Configuration of a whole cluster."""

    name: str = "kind"
    nodes: list[ClusterNode] = field(default_factory=list)
    networking: Networking = field(default_factory=Networking)


@dataclass
class ProviderInfo:
    """Capabilities reported by a node provider."""

    rootless: bool = False
    cgroup2: bool = False
    supports_memory_limit: bool = False
    supports_pids_limit: bool = False
    supports_cpu_shares: bool = False


class Status:
    """Reports the progress of a long running step to a text stream."""

    def __init__(self, writer: IO[str] | None = None) -> None:
        self._writer = writer if writer is not None else sys.stderr
        self.message = ""
        self.active = False

    def start(self, message: str) -> None:
        """Begin a new step, finishing any step still running as successful."""
        if self.active:
            self.end(True)
        self.message = message
        self.active = True
        self._writer.write(f" \u2022 {message}  ...\n")
        self._writer.flush()

    def end(self, success: bool) -> None:
        """Finish the current step."""
        if not self.active:
            return
        mark = "\u2713" if success else "\u2717"
        self._writer.write(f" {mark} {self.message}\n")
        self._writer.flush()
        self.active = False


class Node(ABC):
    """A cluster node that commands can be run against."""

    @abstractmethod
    def __str__(self) -> str:
        """The node name."""

    @abstractmethod
    def role(self) -> str:
        """The node's role label."""

    @abstractmethod
    def ip(self) -> tuple[str, str]:
        """The node's IPv4 and IPv6 addresses."""

    @abstractmethod
    def command(self, command: str, *args: str) -> Cmd:
        """A command to be run inside the node."""

    @abstractmethod
    def serial_logs(self, writer: Any) -> None:
        """Write the node container's own logs to writer."""


class Provider(ABC):
    """A provider of cluster and node infrastructure."""

    @abstractmethod
    def provision(self, status: Status, cfg: Cluster) -> None:
        """Create and start the nodes for cfg."""

    @abstractmethod
    def list_clusters(self) -> list[str]:
        """Names of clusters that have resources under this provider."""

    @abstractmethod
    def list_nodes(self, cluster: str) -> list[Node]:
        """Nodes of the named cluster."""

    @abstractmethod
    def delete_nodes(self, nodes: Sequence[Node]) -> None:
        """Delete the given nodes."""

    @abstractmethod
    def get_api_server_endpoint(self, cluster: str) -> str:
        """Host endpoint of the cluster's API server."""

    @abstractmethod
    def get_api_server_internal_endpoint(self, cluster: str) -> str:
        """Endpoint of the API server inside the node network."""

    @abstractmethod
    def collect_logs(self, dir: str, nodes: Sequence[Node]) -> None:
        """Populate dir with cluster logs and debug files."""

    @abstractmethod
    def info(self) -> ProviderInfo:
        """Capabilities of this provider."""