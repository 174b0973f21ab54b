import io
import subprocess
from unittest.mock import patch

import pytest

from kindprov import docker_images
from kindprov.model import Cluster, ClusterError, ClusterNode, Status

DIGEST = "sha256:69860bda5563ac81e3c0057d654b5253219618a22ec3a346306239bba8cfa1a6"


def make_runner(handler):
    calls = []

    def fake(argv, **kwargs):
        calls.append(list(argv))
        result = handler(list(argv))
        if isinstance(result, BaseException):
            raise result
        rc, out = result
        return subprocess.CompletedProcess(argv, rc, out, b"")

    return fake, calls


@pytest.mark.parametrize(
    "image, friendly",
    [
        ("kindest/node:v1.21.1@" + DIGEST, "kindest/node:v1.21.1"),
        ("kindest/node@" + DIGEST, "kindest/node"),
        ("kindest/node:v1.21.1", "kindest/node:v1.21.1"),
        ("baz:quux", "baz:quux"),
    ],
)
def test_sanitize_image(image, friendly):
    assert docker_images.sanitize_image(image) == (friendly, image)


@pytest.mark.parametrize(
    "out, expected",
    [
        (b"Docker version 20.10.7, build abcdef\n", True),
        (b"podman version 3.2.0\n", False),
        (b"", False),
    ],
)
def test_is_available(out, expected):
    fake, calls = make_runner(lambda argv: (0, out))
    with patch("subprocess.run", fake):
        assert docker_images.is_available() is expected
    assert calls == [["docker", "-v"]]


def test_is_available_missing_binary():
    fake, _ = make_runner(lambda argv: FileNotFoundError("docker"))
    with patch("subprocess.run", fake):
        assert docker_images.is_available() is False


def test_userns_remap():
    fake, _ = make_runner(lambda argv: (0, b"'[\"name=seccomp\",\"name=userns\"]'\n"))
    with patch("subprocess.run", fake):
        assert docker_images.userns_remap() is True
    fake, _ = make_runner(lambda argv: (0, b"'[\"name=seccomp\"]'\n"))
    with patch("subprocess.run", fake):
        assert docker_images.userns_remap() is False


def _info_handler(driver, status_json):
    def handler(argv):
        if argv[-1] == "{{.Driver}}":
            return 0, driver
        return 0, status_json

    return handler


@pytest.mark.parametrize(
    "driver, status_json, expected",
    [
        (b"btrfs\n", b"", True),
        (b"ZFS\n", b"", True),
        (b"overlay2\n", b'[["Backing Filesystem","xfs"],["Supports d_type","true"]]\n', True),
        (b"overlay2\n", b'[["Backing Filesystem","extfs"],["Supports d_type","true"]]\n', False),
        (b"overlay2\n", b"null\n", False),
        (b"overlay2\n", b"garbage\n", False),
    ],
)
def test_mount_dev_mapper(driver, status_json, expected):
    fake, _ = make_runner(_info_handler(driver, status_json))
    with patch("subprocess.run", fake):
        assert docker_images.mount_dev_mapper() is expected


def test_pull_if_not_present_when_present():
    fake, calls = make_runner(lambda argv: (0, b""))
    with patch("subprocess.run", fake):
        assert docker_images.pull_if_not_present(None, "img", 4) is False
    assert calls == [["docker", "inspect", "--type=image", "img"]]


def test_pull_if_not_present_pulls_when_missing():
    fake, calls = make_runner(lambda argv: (1 if argv[1] == "inspect" else 0, b""))
    with patch("subprocess.run", fake):
        assert docker_images.pull_if_not_present(None, "img", 4) is True
    assert calls[-1] == ["docker", "pull", "img"]


def test_pull_retries_then_fails():
    fake, calls = make_runner(lambda argv: (1, b"denied"))
    with patch("subprocess.run", fake), patch("time.sleep") as sleep:
        with pytest.raises(ClusterError, match='failed to pull image "img"'):
            docker_images.pull(None, "img", 3)
    assert len(calls) == 4
    assert [c.args[0] for c in sleep.call_args_list] == [1, 2, 3]


def test_pull_succeeds_after_retry():
    pulls = []

    def handler(argv):
        if argv[1] == "inspect":
            return 1, b""
        pulls.append(argv)
        return (1 if len(pulls) < 2 else 0, b"")

    fake, calls = make_runner(handler)
    with patch("subprocess.run", fake), patch("time.sleep"):
        assert docker_images.pull_if_not_present(None, "img", 4) is True
    assert calls == [
        ["docker", "inspect", "--type=image", "img"],
        ["docker", "pull", "img"],
        ["docker", "pull", "img"],
    ]


def test_ensure_node_images_reports_each_image():
    cfg = Cluster(nodes=[
        ClusterNode(image="kindest/node@" + DIGEST),
        ClusterNode(image="kindest/node@" + DIGEST),
    ])
    out = io.StringIO()
    fake, calls = make_runner(lambda argv: (0, b""))
    with patch("subprocess.run", fake):
        docker_images.ensure_node_images(None, Status(out), cfg)
    assert calls == [["docker", "inspect", "--type=image", "kindest/node@" + DIGEST]]
    assert "Ensuring node image (kindest/node)" in out.getvalue()


def test_ensure_node_images_failure_ends_status():
    cfg = Cluster(nodes=[ClusterNode(image="broken")])
    out = io.StringIO()
    status = Status(out)
    fake, _ = make_runner(lambda argv: (1, b""))
    with patch("subprocess.run", fake), patch("time.sleep"):
        with pytest.raises(ClusterError):
            docker_images.ensure_node_images(None, status, cfg)
    assert status.active is False
    assert "\u2717" in out.getvalue()