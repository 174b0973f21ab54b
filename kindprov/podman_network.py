"""Creating the podman network that cluster nodes join."""

from __future__ import annotations

from kindprov.docker_network import generate_ula_subnet_from_name
from kindprov.model import ClusterError
from kindprov.process import RunError, command, output

# Name of the network shared by all clusters.
FIXED_NETWORK_NAME = "kind"

_MAX_ATTEMPTS = 5
_REGEX_SPECIALS = frozenset("\\.+*?()|[]{}^$")


def _quote_meta(text: str) -> str:
    return "".join("\\" + ch if ch in _REGEX_SPECIALS else ch for ch in text)


def _error_output(err: BaseException | None) -> str | None:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, RunError):
            return err.output.decode("utf-8", "replace")
        seen.add(id(err))
        err = err.__cause__ or err.__context__
    return None


def _try_create(name: str, ipv6_subnet: str) -> RunError | None:
    try:
        create_network(name, ipv6_subnet)
    except RunError as exc:
        return exc
    return None


def ensure_network(name: str) -> None:
    """Create the network called name unless it exists; IPv6 where supported."""
    if check_if_network_exists(name):
        return

    err = _try_create(name, generate_ula_subnet_from_name(name, 0))
    if err is None:
        return
    if is_unknown_ipv6_flag_error(err):
        create_network(name, "")
        return
    if not is_pool_overlap_error(err):
        raise err

    for attempt in range(1, _MAX_ATTEMPTS):
        err = _try_create(name, generate_ula_subnet_from_name(name, attempt))
        if err is None:
            return
        if not is_pool_overlap_error(err):
            raise err
    raise ClusterError("exhausted attempts trying to find a non-overlapping subnet")


def create_network(name: str, ipv6_subnet: str = "") -> None:
    """Create a bridge network, with an IPv6 subnet when given."""
    if not ipv6_subnet:
        command("podman", "network", "create", "-d=bridge", name).run()
        return
    command(
        "podman", "network", "create", "-d=bridge", "--ipv6", "--subnet", ipv6_subnet, name
    ).run()


def check_if_network_exists(name: str) -> bool:
    """Whether podman can inspect a network called name."""
    try:
        output(command("podman", "network", "inspect", _quote_meta(name)))
    except RunError:
        return False
    return True


def is_unknown_ipv6_flag_error(err: BaseException | None) -> bool:
    """Whether err comes from a podman too old to know --ipv6."""
    text = _error_output(err)
    return text is not None and "unknown flag: --ipv6" in text


def is_pool_overlap_error(err: BaseException | None) -> bool:
    """Whether err says the requested subnet is already in use."""
    text = _error_output(err)
    return text is not None and (
        "is being used by a network interface" in text
        or "is already being used by a cni configuration" in text
    )