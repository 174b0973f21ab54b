import io
import json

import pytest

from kindprov import nodeutils
from kindprov.model import ClusterError, Node
from kindprov.process import RunError


class FakeCmd:
    def __init__(self, node, argv):
        self.node = node
        self.argv = argv
        self.stdin = None
        self.stdout = None

    def set_stdin(self, stdin):
        self.stdin = stdin
        return self

    def set_stdout(self, stdout):
        self.stdout = stdout
        return self

    def set_stderr(self, stderr):
        return self

    def run(self):
        stdin = self.stdin
        if hasattr(stdin, "read"):
            stdin = stdin.read()
        self.node.runs.append((self.argv, stdin))
        if self.argv[0] in self.node.fail:
            raise RunError(self.argv, b"", "exit status 1")
        if self.stdout is not None:
            self.stdout.write(self.node.outputs.get(tuple(self.argv), b""))


class FakeNode(Node):
    def __init__(self, name, role="worker", outputs=None, fail=()):
        self.name = name
        self._role = role
        self.outputs = outputs or {}
        self.fail = set(fail)
        self.runs = []

    def __str__(self):
        return self.name

    def role(self):
        if self._role is None:
            raise ClusterError("no role")
        return self._role

    def ip(self):
        return ("", "")

    def command(self, command, *args):
        return FakeCmd(self, [command, *args])

    def serial_logs(self, writer):
        pass


CP = "control-plane"
LB = "external-load-balancer"


def test_select_nodes_by_role():
    a, b, c = FakeNode("a", CP), FakeNode("b"), FakeNode("c")
    assert nodeutils.select_nodes_by_role([a, b, c], "worker") == [b, c]


def test_select_nodes_by_role_propagates_role_error():
    with pytest.raises(ClusterError):
        nodeutils.select_nodes_by_role([FakeNode("a", None)], "worker")


def test_internal_nodes_excludes_load_balancer():
    cp, w, lb = FakeNode("cp", CP), FakeNode("w"), FakeNode("lb", LB)
    assert nodeutils.internal_nodes([cp, lb, w]) == [cp, w]


def test_external_load_balancer_node():
    lb = FakeNode("lb", LB)
    assert nodeutils.external_load_balancer_node([FakeNode("w"), lb]) is lb
    assert nodeutils.external_load_balancer_node([FakeNode("w")]) is None


def test_external_load_balancer_node_rejects_two():
    with pytest.raises(ClusterError, match="unexpected number"):
        nodeutils.external_load_balancer_node([FakeNode("a", LB), FakeNode("b", LB)])


def test_api_server_endpoint_prefers_load_balancer():
    lb = FakeNode("lb", LB)
    nodes = [FakeNode("cp1", CP), FakeNode("cp2", CP), lb]
    assert nodeutils.api_server_endpoint_node(nodes) is lb


def test_api_server_endpoint_single_control_plane():
    cp = FakeNode("cp", CP)
    assert nodeutils.api_server_endpoint_node([FakeNode("w"), cp]) is cp


def test_api_server_endpoint_two_control_planes_no_lb():
    with pytest.raises(ClusterError, match="expected one control plane node"):
        nodeutils.api_server_endpoint_node([FakeNode("a", CP), FakeNode("b", CP)])


def test_control_plane_nodes_sorted_by_name():
    nodes = [FakeNode("z", CP), FakeNode("w"), FakeNode("a", CP), FakeNode("m", CP)]
    names = [str(n) for n in nodeutils.control_plane_nodes(nodes)]
    assert names == sorted(names)
    assert len(names) == 3


def test_bootstrap_and_secondary():
    nodes = [FakeNode("cp3", CP), FakeNode("cp1", CP), FakeNode("cp2", CP)]
    assert str(nodeutils.bootstrap_control_plane_node(nodes)) == "cp1"
    assert [str(n) for n in nodeutils.secondary_control_plane_nodes(nodes)] == [
        "cp2", "cp3",
    ]


def test_bootstrap_requires_control_plane():
    with pytest.raises(ClusterError, match="expected at least one"):
        nodeutils.bootstrap_control_plane_node([FakeNode("w")])
    with pytest.raises(ClusterError, match="expected at least one"):
        nodeutils.secondary_control_plane_nodes([])


def test_kube_version():
    node = FakeNode("n", outputs={("cat", "/kind/version"): b"v1.21.1\n"})
    assert nodeutils.kube_version(node) == "v1.21.1"


def test_kube_version_multiple_lines():
    node = FakeNode("n", outputs={("cat", "/kind/version"): b"a\nb\n"})
    with pytest.raises(ClusterError, match="one line"):
        nodeutils.kube_version(node)


def test_write_file():
    node = FakeNode("n")
    nodeutils.write_file(node, "/etc/app/conf.yaml", "key: value")
    assert node.runs == [
        (["mkdir", "-p", "/etc/app"], None),
        (["cp", "/dev/stdin", "/etc/app/conf.yaml"], "key: value"),
    ]


def test_write_file_mkdir_failure():
    node = FakeNode("n", fail={"mkdir"})
    with pytest.raises(ClusterError, match="failed to create directory"):
        nodeutils.write_file(node, "/etc/app/conf.yaml", "x")


def test_copy_node_to_node():
    a = FakeNode("a", outputs={("cat", "/etc/f"): b"payload"})
    b = FakeNode("b")
    nodeutils.copy_node_to_node(a, b, "/etc/f")
    assert b.runs[-1] == (["cp", "/dev/stdin", "/etc/f"], b"payload")


def test_copy_node_to_node_read_failure():
    a = FakeNode("a", fail={"cat"})
    with pytest.raises(ClusterError, match="failed to read"):
        nodeutils.copy_node_to_node(a, FakeNode("b"), "/etc/f")


def test_load_image_archive():
    node = FakeNode("n")
    nodeutils.load_image_archive(node, io.BytesIO(b"tar"))
    assert node.runs == [
        (["ctr", "--namespace=k8s.io", "images", "import", "-"], b"tar"),
    ]


def test_load_image_archive_failure():
    with pytest.raises(ClusterError, match="failed to load image"):
        nodeutils.load_image_archive(FakeNode("n", fail={"ctr"}), b"tar")


def test_image_id():
    out = json.dumps({"status": {"id": "sha256:abc", "size": "1"}}).encode()
    node = FakeNode("n", outputs={("crictl", "inspecti", "img"): out})
    assert nodeutils.image_id(node, "img") == "sha256:abc"


def test_image_id_invalid_json():
    node = FakeNode("n", outputs={("crictl", "inspecti", "img"): b"not json"})
    with pytest.raises(ValueError):
        nodeutils.image_id(node, "img")