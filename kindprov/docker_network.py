"""Creating and de-duplicating the docker network that cluster nodes join."""

from __future__ import annotations

import hashlib
import io
import ipaddress
import json
import re
import struct
from dataclasses import dataclass, field
from typing import Any

from kindprov.model import ClusterError
from kindprov.process import RunError, command, output, output_lines

# Name of the user defined bridge network shared by all clusters.
FIXED_NETWORK_NAME = "kind"

_MAX_ATTEMPTS = 5
_REGEX_SPECIALS = frozenset("\\.+*?()|[]{}^$")
_INTEGER = re.compile(r"[+-]?\d+")


@dataclass
class NetworkInspectEntry:
    """The parts of `docker network inspect` output used for ordering networks."""

    id: str = ""
    containers: dict[str, dict[str, str]] = field(default_factory=dict)


def _quote_meta(text: str) -> str:
    return "".join("\\" + ch if ch in _REGEX_SPECIALS else ch for ch in text)


def _run_error(err: BaseException | None) -> RunError | None:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, RunError):
            return err
        seen.add(id(err))
        err = err.__cause__ or err.__context__
    return None


def _error_output(err: BaseException | None) -> str | None:
    rerr = _run_error(err)
    if rerr is None:
        return None
    return rerr.output.decode("utf-8", "replace")


def _entry_from_json(raw: Any) -> NetworkInspectEntry:
    if not isinstance(raw, dict):
        raise ClusterError("failed to decode networks list: entry is not an object")
    containers = raw.get("Containers") or {}
    return NetworkInspectEntry(id=str(raw.get("Id", "")), containers=dict(containers))


def _try_create(name: str, ipv6_subnet: str, mtu: int) -> ClusterError | None:
    try:
        _create_network_no_duplicates(name, ipv6_subnet, mtu)
    except ClusterError as exc:
        return exc
    return None


def ensure_network(name: str) -> None:
    """Make sure exactly one docker network called name exists."""
    if remove_duplicate_networks(name):
        return

    mtu = get_default_network_mtu()
    err = _try_create(name, generate_ula_subnet_from_name(name, 0), mtu)
    if err is None:
        return
    if is_ipv6_unavailable_error(err):
        # IPAM is automatic for IPv4 only networks, so one attempt is enough.
        _create_network_no_duplicates(name, "", mtu)
        return
    if not is_pool_overlap_error(err):
        raise err
    if check_if_network_exists(name):
        return

    for attempt in range(1, _MAX_ATTEMPTS):
        err = _try_create(name, generate_ula_subnet_from_name(name, attempt), mtu)
        if err is None:
            return
        if not is_pool_overlap_error(err):
            raise err
        if check_if_network_exists(name):
            return
    raise ClusterError("exhausted attempts trying to find a non-overlapping subnet")


def _create_network_no_duplicates(name: str, ipv6_subnet: str, mtu: int) -> None:
    try:
        create_network(name, ipv6_subnet, mtu)
    except RunError as exc:
        if not is_network_already_exists_error(exc):
            raise
    remove_duplicate_networks(name)


def remove_duplicate_networks(name: str) -> bool:
    """Delete all but the preferred network called name; return whether one exists."""
    networks = sorted_networks_with_name(name)
    if len(networks) > 1:
        try:
            delete_networks(*networks[1:])
        except ClusterError as exc:
            if not is_only_error_no_such_network(exc):
                raise
    return bool(networks)


def create_network(name: str, ipv6_subnet: str = "", mtu: int = 0) -> None:
    """Create a bridge network, with an IPv6 subnet and MTU when given."""
    args = [
        "network",
        "create",
        "-d=bridge",
        "-o",
        "com.docker.network.bridge.enable_ip_masquerade=true",
    ]
    if mtu > 0:
        args += ["-o", f"com.docker.network.driver.mtu={mtu}"]
    if ipv6_subnet:
        args += ["--ipv6", "--subnet", ipv6_subnet]
    args.append(name)
    command("docker", *args).run()


def get_default_network_mtu() -> int:
    """The MTU of docker's default bridge network, or 0 if unknown."""
    cmd = command(
        "docker",
        "network",
        "inspect",
        "bridge",
        "-f",
        '{{ index .Options "com.docker.network.driver.mtu" }}',
    )
    try:
        lines = output_lines(cmd)
    except RunError:
        return 0
    if len(lines) != 1 or not _INTEGER.fullmatch(lines[0]):
        return 0
    return int(lines[0])


def sorted_networks_with_name(name: str) -> list[str]:
    """IDs of networks called name, the one to keep first."""
    ids = networks_with_name(name)
    if len(ids) < 2:
        return ids
    networks = inspect_networks(ids)
    sort_network_inspect_entries(networks)
    return [network.id for network in networks]


def sort_network_inspect_entries(networks: list[NetworkInspectEntry]) -> None:
    """Sort in place: networks with more containers first, then by ID."""
    networks.sort(key=lambda n: (-len(n.containers or {}), n.id))


def inspect_networks(network_ids: list[str]) -> list[NetworkInspectEntry]:
    """Inspect the given networks; missing networks are left out."""
    buf = io.BytesIO()
    cmd = command("docker", "network", "inspect", *network_ids).set_stdout(buf)
    try:
        cmd.run()
    except RunError as exc:
        if not is_only_error_no_such_network(exc):
            raise
    try:
        raw = json.loads(buf.getvalue().decode("utf-8", "replace"))
    except ValueError as exc:
        raise ClusterError(f"failed to decode networks list: {exc}") from exc
    if not isinstance(raw, list):
        raise ClusterError("failed to decode networks list: not a list")
    return [_entry_from_json(item) for item in raw]


def networks_with_name(name: str) -> list[str]:
    """IDs of the networks whose name is exactly name."""
    out = output(
        command(
            "docker",
            "network",
            "ls",
            f"--filter=name=^{_quote_meta(name)}$",
            "--format={{.ID}}",
        )
    ).decode("utf-8", "replace")
    cleaned = out[:-1] if out.endswith("\n") else out
    if not cleaned:
        return []
    return cleaned.split("\n")


def check_if_network_exists(name: str) -> bool:
    """Whether a network whose name is exactly name exists."""
    out = output(
        command(
            "docker",
            "network",
            "ls",
            f"--filter=name=^{_quote_meta(name)}$",
            "--format={{.Name}}",
        )
    )
    return out.decode("utf-8", "replace").startswith(name)


def is_ipv6_unavailable_error(err: BaseException | None) -> bool:
    """Whether err says IPv6 cannot be used on this host."""
    text = _error_output(err)
    return text is not None and text.startswith(
        "Error response from daemon: Cannot read IPv6 setup for bridge"
    )


def is_pool_overlap_error(err: BaseException | None) -> bool:
    """Whether err says the requested subnet overlaps an existing one."""
    text = _error_output(err)
    return text is not None and text.startswith(
        "Error response from daemon: Pool overlaps with other one on this address space"
    )


def is_network_already_exists_error(err: BaseException | None) -> bool:
    """Whether err says a network with the same name already exists."""
    text = _error_output(err)
    return (
        text is not None
        and text.startswith("Error response from daemon: network with name")
        and "already exists" in text
    )


def is_only_error_no_such_network(err: BaseException | None) -> bool:
    """Whether every error line in err's output is a "No such network" error."""
    text = _error_output(err)
    if text is None:
        return False
    # Only complete lines count; a trailing fragment without newline is ignored.
    for line in text.split("\n")[:-1]:
        if line.startswith("Error: No such network:"):
            continue
        if line.startswith("Error: "):
            return False
    return True


def delete_networks(*networks: str) -> None:
    """Remove the given networks."""
    command("docker", "network", "rm", *networks).run()


def generate_ula_subnet_from_name(name: str, attempt: int = 0) -> str:
    """A /64 IPv6 subnet in fc00::/8 derived from name and the attempt number."""
    digest = hashlib.sha1(name.encode() + struct.pack("<i", attempt)).digest()
    raw = bytes([0xFC, 0x00]) + digest[2:8] + bytes(8)
    network = ipaddress.IPv6Network((ipaddress.IPv6Address(raw), 64))
    return str(network)