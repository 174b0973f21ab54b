"""Selecting nodes by role and simple file and image operations on nodes."""

from __future__ import annotations

import io
import json
import posixpath
from typing import Any, Sequence

from kindprov.model import ClusterError, Node, NodeRole
from kindprov.process import RunError, output_lines


def select_nodes_by_role(all_nodes: Sequence[Node], role: str) -> list[Node]:
    """Nodes whose role equals role."""
    role = str(role)
    return [node for node in all_nodes if node.role() == role]


def internal_nodes(all_nodes: Sequence[Node]) -> list[Node]:
    """Nodes that are Kubernetes nodes, excluding e.g. the external load balancer."""
    wanted = {NodeRole.WORKER.value, NodeRole.CONTROL_PLANE.value}
    return [node for node in all_nodes if node.role() in wanted]


def external_load_balancer_node(all_nodes: Sequence[Node]) -> Node | None:
    """The external load balancer node, or None if there is none."""
    role = NodeRole.EXTERNAL_LOAD_BALANCER.value
    found = select_nodes_by_role(all_nodes, role)
    if not found:
        return None
    if len(found) > 1:
        raise ClusterError(f"unexpected number of {role} nodes {len(found)}")
    return found[0]


def api_server_endpoint_node(all_nodes: Sequence[Node]) -> Node:
    """The load balancer if present, otherwise the single control plane node."""
    try:
        node = external_load_balancer_node(all_nodes)
    except ClusterError as exc:
        raise ClusterError(f"failed to find api-server endpoint node: {exc}") from exc
    if node is not None:
        return node
    try:
        planes = control_plane_nodes(all_nodes)
    except ClusterError as exc:
        raise ClusterError(f"failed to find api-server endpoint node: {exc}") from exc
    if len(planes) != 1:
        raise ClusterError(
            f"expected one control plane node or a load balancer, "
            f"not {len(planes)} and none"
        )
    return planes[0]


def control_plane_nodes(all_nodes: Sequence[Node]) -> list[Node]:
    """Control plane nodes sorted by name; the first is the bootstrap node."""
    planes = select_nodes_by_role(all_nodes, NodeRole.CONTROL_PLANE.value)
    return sorted(planes, key=str)


def _require_control_planes(all_nodes: Sequence[Node]) -> list[Node]:
    planes = control_plane_nodes(all_nodes)
    if not planes:
        raise ClusterError(
            f"expected at least one {NodeRole.CONTROL_PLANE.value} node"
        )
    return planes


def bootstrap_control_plane_node(all_nodes: Sequence[Node]) -> Node:
    """The bootstrap control plane node."""
    return _require_control_planes(all_nodes)[0]


def secondary_control_plane_nodes(all_nodes: Sequence[Node]) -> list[Node]:
    """Control plane nodes other than the bootstrap one."""
    return _require_control_planes(all_nodes)[1:]


def kube_version(node: Node) -> str:
    """The Kubernetes version installed on the node."""
    try:
        lines = output_lines(node.command("cat", "/kind/version"))
    except RunError as exc:
        raise ClusterError(f"failed to get file: {exc}") from exc
    if len(lines) != 1:
        raise ClusterError(f"file should only be one line, got {len(lines)} lines")
    return lines[0]


def write_file(node: Node, dest: str, content: str) -> None:
    """Write content to dest on the node, creating its directory."""
    parent = posixpath.dirname(dest)
    try:
        node.command("mkdir", "-p", parent).run()
    except RunError as exc:
        raise ClusterError(f"failed to create directory {parent}: {exc}") from exc
    node.command("cp", "/dev/stdin", dest).set_stdin(content).run()


def copy_node_to_node(a: Node, b: Node, file: str) -> None:
    """Copy file from node a to the same path on node b."""
    parent = posixpath.dirname(file)
    try:
        b.command("mkdir", "-p", parent).run()
    except RunError as exc:
        raise ClusterError(f'failed to create directory "{parent}": {exc}') from exc
    buf = io.BytesIO()
    try:
        a.command("cat", file).set_stdout(buf).run()
    except RunError as exc:
        raise ClusterError(f'failed to read "{file}" from node: {exc}') from exc
    try:
        b.command("cp", "/dev/stdin", file).set_stdin(buf.getvalue()).run()
    except RunError as exc:
        raise ClusterError(f'failed to write "{file}" to node: {exc}') from exc


def load_image_archive(node: Node, image: Any) -> None:
    """Load an image archive (bytes or a readable stream) onto the node."""
    cmd = node.command("ctr", "--namespace=k8s.io", "images", "import", "-")
    try:
        cmd.set_stdin(image).run()
    except RunError as exc:
        raise ClusterError(f"failed to load image: {exc}") from exc


def image_id(node: Node, image: str) -> str:
    """The ID of the named image on the node."""
    buf = io.BytesIO()
    node.command("crictl", "inspecti", image).set_stdout(buf).run()
    data = json.loads(buf.getvalue().decode("utf-8", "replace"))
    status = data.get("status") if isinstance(data, dict) else None
    if not isinstance(status, dict):
        return ""
    return str(status.get("id", ""))