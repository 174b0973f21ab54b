"""Helpers shared by the node providers."""

from __future__ import annotations

import os
import socket
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import IO, Callable, Iterable

from kindprov.model import Cluster, ClusterError, Node

# Port the control plane listens on inside the node network.
API_SERVER_INTERNAL_PORT = 6443

HTTP_PROXY = "HTTP_PROXY"
HTTPS_PROXY = "HTTPS_PROXY"
NO_PROXY = "NO_PROXY"


class AggregateError(ClusterError):
    """Several errors collected from concurrent work."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = list(errors)
        if len(self.errors) == 1:
            message = str(self.errors[0])
        else:
            message = "[" + ", ".join(str(e) for e in self.errors) + "]"
        super().__init__(message)


def port_or_get_free_port(port: int, listen_addr: str) -> int:
    """Keep a set port, map -1 to 0, and pick a free port for 0."""
    if port == -1:
        return 0
    if port == 0:
        return get_free_port(listen_addr)
    return port


def get_free_port(listen_addr: str) -> int:
    """Return a TCP port that is currently free on listen_addr."""
    try:
        infos = socket.getaddrinfo(
            listen_addr or None, 0, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )
    except OSError as exc:
        raise ClusterError(f"failed to resolve {listen_addr!r}: {exc}") from exc
    last: OSError | None = None
    for family, socktype, proto, _, addr in infos:
        try:
            with socket.socket(family, socktype, proto) as sock:
                sock.bind(addr)
                sock.listen(1)
                return int(sock.getsockname()[1])
        except OSError as exc:
            last = exc
    raise ClusterError(f"failed to listen on {listen_addr!r}: {last}") from last


def required_node_images(cfg: Cluster) -> set[str]:
    """The set of node images named by the config."""
    return {node.image for node in cfg.nodes}


def file_on_host(path: str) -> IO[bytes]:
    """Create path for binary writing, creating parent directories as needed."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    return open(path, "wb")


def collect_logs(node: Node, dir: str) -> None:
    """Write version and journal logs from node into dir."""

    def exec_to_path(cmd, name: str) -> Callable[[], None]:
        def run() -> None:
            with file_on_host(os.path.join(dir, name)) as f:
                cmd.set_stdout(f).set_stderr(f).run()

        return run

    aggregate_concurrent(
        [
            exec_to_path(node.command("cat", "/kind/version"), "kubernetes-version.txt"),
            exec_to_path(node.command("journalctl", "--no-pager"), "journal.log"),
            exec_to_path(
                node.command("journalctl", "--no-pager", "-u", "kubelet.service"),
                "kubelet.log",
            ),
            exec_to_path(
                node.command("journalctl", "--no-pager", "-u", "containerd.service"),
                "containerd.log",
            ),
        ]
    )


def make_node_namer(cluster_name: str) -> Callable[[str], str]:
    """Return a function naming nodes by role: first plain, then numbered from 2."""
    counter: dict[str, int] = {}

    def namer(role: str) -> str:
        role = str(role)
        count = counter.get(role, 0) + 1
        counter[role] = count
        suffix = str(count) if count > 1 else ""
        return f"{cluster_name}-{role}{suffix}"

    return namer


def get_proxy_envs(
    cfg: Cluster, getenv: Callable[[str], str | None] | None = None
) -> dict[str, str]:
    """Proxy variables from the environment, with cluster subnets added to NO_PROXY."""
    lookup = getenv if getenv is not None else os.environ.get
    envs: dict[str, str] = {}
    for name in (HTTP_PROXY, HTTPS_PROXY, NO_PROXY):
        value = lookup(name) or lookup(name.lower()) or ""
        if value:
            envs[name] = value
            envs[name.lower()] = value
    if envs:
        no_proxy = envs.get(NO_PROXY, "")
        if no_proxy:
            no_proxy += ","
        no_proxy += cfg.networking.service_subnet + "," + cfg.networking.pod_subnet
        envs[NO_PROXY] = no_proxy
        envs[NO_PROXY.lower()] = no_proxy
    return envs


def aggregate_concurrent(funcs: Iterable[Callable[[], object]]) -> None:
    """Run all funcs concurrently; raise AggregateError if any failed."""
    funcs = list(funcs)
    if not funcs:
        return
    with ThreadPoolExecutor(max_workers=len(funcs)) as pool:
        futures = [pool.submit(fn) for fn in funcs]
    errors = [f.exception() for f in futures if f.exception() is not None]
    if errors:
        raise AggregateError(errors)


def until_error_concurrent(funcs: Iterable[Callable[[], object]]) -> None:
    """Run funcs concurrently and raise the first error to occur."""
    funcs = list(funcs)
    if not funcs:
        return
    pool = ThreadPoolExecutor(max_workers=len(funcs))
    try:
        futures = [pool.submit(fn) for fn in funcs]
        for future in as_completed(futures):
            error = future.exception()
            if error is not None:
                raise error
    finally:
        pool.shutdown(wait=False)