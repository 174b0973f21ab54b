"""Planning and building the `docker run` arguments for cluster nodes."""

from __future__ import annotations

import os
from dataclasses import replace
from typing import Callable, Sequence

from kindprov.common import (
    API_SERVER_INTERNAL_PORT,
    NO_PROXY,
    get_proxy_envs,
    make_node_namer,
    port_or_get_free_port,
)
from kindprov.container_node import CLUSTER_LABEL_KEY, NODE_ROLE_LABEL_KEY
from kindprov.docker_images import mount_dev_mapper, userns_remap
from kindprov.model import (
    Cluster,
    ClusterError,
    ClusterIPFamily,
    ClusterNode,
    Mount,
    MountPropagation,
    NodeRole,
    PortMapping,
    PortMappingProtocol,
)
from kindprov.process import (
    SYSTEMD_MULTI_USER_PATTERN,
    RunError,
    command,
    output_lines,
    run_container,
)

_ENGINE = "docker"
_PROTOCOLS = {p.value for p in PortMappingProtocol}


def _join_host_port(host: str, port: object) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _absolute_mounts(node: ClusterNode) -> None:
    for mount in node.extra_mounts:
        if not os.path.isabs(mount.host_path):
            try:
                mount.host_path = os.path.abspath(mount.host_path)
            except (OSError, ValueError) as exc:
                raise ClusterError(
                    f'unable to resolve absolute path for hostPath: "{mount.host_path}": {exc}'
                ) from exc


def _load_balancer_creator(
    cfg: Cluster, name: str, generic_args: list[str], image: str
) -> Callable[[], None]:
    def create() -> None:
        args = run_args_for_load_balancer(cfg, name, generic_args, image)
        run_container(_ENGINE, name, args)

    return create


def _node_creator(
    cfg: Cluster,
    node: ClusterNode,
    name: str,
    generic_args: list[str],
    api_server_mapping: PortMapping | None,
) -> Callable[[], None]:
    def create() -> None:
        target = node
        if api_server_mapping is not None:
            target = replace(
                node,
                extra_port_mappings=[*node.extra_port_mappings, api_server_mapping],
            )
        args = run_args_for_node(target, cfg.networking.ip_family, name, generic_args)
        run_container(_ENGINE, name, args, SYSTEMD_MULTI_USER_PATTERN)

    return create


def plan_creation(
    cfg: Cluster, network_name: str, load_balancer_image: str
) -> list[Callable[[], None]]:
    """Return functions that each create one container of the cluster."""
    namer = make_node_namer(cfg.name)
    names = [namer(str(node.role)) for node in cfg.nodes]
    have_load_balancer = cluster_has_implicit_load_balancer(cfg)
    if have_load_balancer:
        names.append(namer(NodeRole.EXTERNAL_LOAD_BALANCER.value))

    generic_args = common_args(cfg.name, cfg, network_name, names)

    creators: list[Callable[[], None]] = []
    api_server_port = cfg.networking.api_server_port
    api_server_address = cfg.networking.api_server_address
    if have_load_balancer:
        # Only the load balancer publishes the configured endpoint.
        api_server_port = 0
        api_server_address = "127.0.0.1"
        if cfg.networking.ip_family == ClusterIPFamily.IPV6:
            api_server_address = "::1"
        creators.append(
            _load_balancer_creator(cfg, names[-1], generic_args, load_balancer_image)
        )

    for index, config_node in enumerate(cfg.nodes):
        node = config_node.copy()
        name = names[index]
        _absolute_mounts(node)
        if node.role == NodeRole.CONTROL_PLANE:
            mapping = PortMapping(
                container_port=API_SERVER_INTERNAL_PORT,
                host_port=api_server_port,
                listen_address=api_server_address,
            )
            creators.append(_node_creator(cfg, node, name, generic_args, mapping))
        elif node.role == NodeRole.WORKER:
            creators.append(_node_creator(cfg, node, name, generic_args, None))
        else:
            raise ClusterError(f'unknown node role: "{node.role}"')
    return creators


def cluster_is_ipv6(cfg: Cluster) -> bool:
    """Whether the cluster uses IPv6, alone or in dual stack."""
    return cfg.networking.ip_family in (ClusterIPFamily.IPV6, ClusterIPFamily.DUAL_STACK)


def cluster_has_implicit_load_balancer(cfg: Cluster) -> bool:
    """Whether the cluster has more than one control plane node."""
    planes = sum(1 for n in cfg.nodes if str(n.role) == NodeRole.CONTROL_PLANE.value)
    return planes > 1


def common_args(
    cluster: str, cfg: Cluster, network_name: str, node_names: Sequence[str]
) -> list[str]:
    """Arguments shared by every container of the cluster."""
    args = [
        "--detach",
        "--tty",
        "--label",
        f"{CLUSTER_LABEL_KEY}={cluster}",
        "--net",
        network_name,
        # Restart once, which in practice means only on host or daemon reboot.
        "--restart=on-failure:1",
        # The entrypoint must be PID 1, not an injected init.
        "--init=false",
    ]
    if cluster_is_ipv6(cfg):
        args += [
            "--sysctl=net.ipv6.conf.all.disable_ipv6=0",
            "--sysctl=net.ipv6.conf.all.forwarding=1",
        ]
    try:
        proxy_env = get_proxy_env(cfg, network_name, node_names)
    except ClusterError as exc:
        raise ClusterError(f"proxy setup error: {exc}") from exc
    for key, value in proxy_env.items():
        args += ["-e", f"{key}={value}"]
    if userns_remap():
        args.append("--userns=host")
    if mount_dev_mapper():
        args += ["--volume", "/dev/mapper:/dev/mapper"]
    return args


def run_args_for_node(
    node: ClusterNode,
    cluster_ip_family: ClusterIPFamily,
    name: str,
    args: Sequence[str],
) -> list[str]:
    """Full `docker run` arguments for a cluster node."""
    result = [
        "--hostname",
        name,
        "--label",
        f"{NODE_ROLE_LABEL_KEY}={node.role}",
        "--privileged",
        "--security-opt",
        "seccomp=unconfined",
        "--security-opt",
        "apparmor=unconfined",
        "--tmpfs",
        "/tmp",
        "--tmpfs",
        "/run",
        "--volume",
        "/var",
        "--volume",
        "/lib/modules:/lib/modules:ro",
        "-e",
        "KIND_EXPERIMENTAL_CONTAINERD_SNAPSHOTTER",
        "--device",
        "/dev/fuse",
        *args,
    ]
    result += generate_mount_bindings(*node.extra_mounts)
    result += generate_port_mappings(cluster_ip_family, *node.extra_port_mappings)
    if node.role == NodeRole.CONTROL_PLANE:
        result += ["-e", "KUBECONFIG=/etc/kubernetes/admin.conf"]
    result.append(node.image)
    return result


def run_args_for_load_balancer(
    cfg: Cluster, name: str, args: Sequence[str], image: str
) -> list[str]:
    """Full `docker run` arguments for the external load balancer."""
    result = [
        "--hostname",
        name,
        "--label",
        f"{NODE_ROLE_LABEL_KEY}={NodeRole.EXTERNAL_LOAD_BALANCER.value}",
        *args,
    ]
    result += generate_port_mappings(
        cfg.networking.ip_family,
        PortMapping(
            container_port=API_SERVER_INTERNAL_PORT,
            host_port=cfg.networking.api_server_port,
            listen_address=cfg.networking.api_server_address,
        ),
    )
    result.append(image)
    return result


def get_proxy_env(
    cfg: Cluster, network_name: str, node_names: Sequence[str]
) -> dict[str, str]:
    """Proxy variables with network subnets, node names and service domains no-proxied."""
    envs = get_proxy_envs(cfg)
    if envs:
        subnets = get_subnets(network_name)
        no_proxy = [
            *subnets,
            envs.get(NO_PROXY, ""),
            *node_names,
            ".svc",
            ".svc.cluster",
            ".svc.cluster.local",
        ]
        joined = ",".join(no_proxy)
        envs[NO_PROXY] = joined
        envs[NO_PROXY.lower()] = joined
    return envs


def get_subnets(network_name: str) -> list[str]:
    """The IPAM subnets of the named docker network."""
    fmt = '{{range (index (index . "IPAM") "Config")}}{{index . "Subnet"}} {{end}}'
    try:
        lines = output_lines(command(_ENGINE, "network", "inspect", "-f", fmt, network_name))
    except RunError as exc:
        raise ClusterError(f"failed to get subnets: {exc}") from exc
    if not lines:
        raise ClusterError("failed to get subnets: no output")
    return lines[0].strip().split(" ")


def generate_mount_bindings(*mounts: Mount) -> list[str]:
    """`--volume` arguments for the given mounts."""
    args = []
    for mount in mounts:
        bind = f"{mount.host_path}:{mount.container_path}"
        attrs = []
        if mount.readonly:
            attrs.append("ro")
        if mount.selinux_relabel:
            attrs.append("Z")
        if mount.propagation == MountPropagation.BIDIRECTIONAL:
            attrs.append("rshared")
        elif mount.propagation == MountPropagation.HOST_TO_CONTAINER:
            attrs.append("rslave")
        if attrs:
            bind = f"{bind}:{','.join(attrs)}"
        args.append(f"--volume={bind}")
    return args


def generate_port_mappings(
    cluster_ip_family: ClusterIPFamily, *port_mappings: PortMapping
) -> list[str]:
    """`--publish` arguments for the given port mappings."""
    args = []
    for mapping in port_mappings:
        listen_address = mapping.listen_address
        if not listen_address:
            if cluster_ip_family == ClusterIPFamily.IPV4:
                listen_address = "0.0.0.0"
            elif cluster_ip_family == ClusterIPFamily.IPV6:
                listen_address = "::"
            else:
                raise ClusterError(f"unknown cluster IP family: {cluster_ip_family}")
        protocol = str(mapping.protocol) or PortMappingProtocol.TCP.value
        if protocol not in _PROTOCOLS:
            raise ClusterError(f"unknown port mapping protocol: {protocol}")
        try:
            host_port = port_or_get_free_port(mapping.host_port, listen_address)
        except ClusterError as exc:
            raise ClusterError(
                f"failed to get random host port for port mapping: {exc}"
            ) from exc
        binding = _join_host_port(listen_address, host_port)
        args.append(f"--publish={binding}:{mapping.container_port}/{protocol}")
    return args