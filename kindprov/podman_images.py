"""Pulling node images, volumes and host probes for the podman engine."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass

from kindprov.common import required_node_images
from kindprov.model import Cluster, ClusterError, Status
from kindprov.process import RunError, command, output, output_lines

_log = logging.getLogger(__name__)

_DIGEST_MARKER = "@sha256:"
_DEFAULT_DOMAIN = "docker.io/"
_OFFICIAL_REPO_NAME = "library"

MIN_SUPPORTED_VERSION = "1.8.0"

_VERSION_RE = re.compile(r"^\s*v?([0-9]+(?:\.[0-9]+)*)(.*)$", re.DOTALL)
_EXTRA_RE = re.compile(
    r"^(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


@dataclass(frozen=True)
class _Version:
    major: int
    minor: int
    patch: int
    pre_release: str = ""
    build: str = ""

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.pre_release:
            text += "-" + self.pre_release
        if self.build:
            text += "+" + self.build
        return text

    def _key(self) -> tuple:
        if not self.pre_release:
            pre: tuple = (1,)
        else:
            pre = (
                0,
                tuple(
                    (0, int(part)) if part.isdigit() else (1, part)
                    for part in self.pre_release.split(".")
                ),
            )
        return (self.major, self.minor, self.patch, pre)

    def at_least(self, other: _Version) -> bool:
        return self._key() >= other._key()


def _parse_semantic(text: str) -> _Version:
    match = _VERSION_RE.match(text)
    if match is None:
        raise ClusterError(f'could not parse "{text}" as version')
    components = match.group(1).split(".")
    if len(components) != 3:
        raise ClusterError(f'illegal semantic version "{text}"')
    for part in components:
        if len(part) > 1 and part.startswith("0"):
            raise ClusterError(
                f'illegal zero-prefixed version component "{part}" in "{text}"'
            )
    extra = _EXTRA_RE.match(match.group(2))
    if extra is None:
        raise ClusterError(f'illegal version string "{text}"')
    major, minor, patch = (int(p) for p in components)
    return _Version(major, minor, patch, extra.group(1) or "", extra.group(2) or "")


def ensure_node_images(logger: logging.Logger | None, status: Status, cfg: Cluster) -> None:
    """Make sure every node image of cfg is present locally, pulling as needed."""
    logger = logger or _log
    for image in sorted(required_node_images(cfg)):
        friendly, pullable = sanitize_image(image)
        status.start(f"Ensuring node image ({friendly}) \U0001f5bc")
        try:
            pull_if_not_present(logger, pullable, 4)
        except ClusterError:
            status.end(False)
            raise


def pull_if_not_present(logger: logging.Logger | None, image: str, retries: int) -> bool:
    """Pull image unless present; return True if a pull was attempted."""
    logger = logger or _log
    try:
        command("podman", "inspect", "--type=image", image).run()
    except RunError:
        pull(logger, image, retries)
        return True
    logger.debug("Image: %s present locally", image)
    return False


def _try_pull(image: str) -> RunError | None:
    try:
        command("podman", "pull", image).run()
    except RunError as exc:
        return exc
    return None


def pull(logger: logging.Logger | None, image: str, retries: int) -> None:
    """Pull image, retrying up to retries times with a growing delay."""
    logger = logger or _log
    logger.debug("Pulling image: %s ...", image)
    err = _try_pull(image)
    for attempt in range(retries):
        if err is None:
            break
        time.sleep(attempt + 1)
        logger.debug('Trying again to pull image: "%s" ... %s', image, err)
        err = _try_pull(image)
    if err is not None:
        raise ClusterError(f'failed to pull image "{image}": {err}') from err


def sanitize_image(image: str) -> tuple[str, str]:
    """Return a human friendly name and the fully qualified pullable name of image."""
    if _DIGEST_MARKER in image:
        splits = image.split(_DIGEST_MARKER)
        friendly = splits[0]
        remainder = splits[0].split(":")[0] + _DIGEST_MARKER + splits[1]
    else:
        friendly = image
        remainder = image

    if "/" not in remainder:
        remainder = f"{_OFFICIAL_REPO_NAME}/{remainder}"

    slash = friendly.find("/")
    if slash == -1 or (
        not any(ch in friendly[:slash] for ch in ".:") and friendly[:slash] != "localhost"
    ):
        return friendly, _DEFAULT_DOMAIN + remainder
    return friendly, remainder


def is_available() -> bool:
    """Whether the podman command line is installed and working."""
    try:
        lines = output_lines(command("podman", "-v"))
    except RunError:
        return False
    return len(lines) == 1 and lines[0].startswith("podman version")


def get_podman_version() -> _Version:
    """The semantic version of the installed podman."""
    lines = output_lines(command("podman", "--version"))
    if len(lines) != 1:
        raise ClusterError(f"podman version should only be one line, got {len(lines)}")
    parts = lines[0].split(" ")
    if len(parts) != 3:
        raise ClusterError(
            f'podman --version contents should have 3 parts, got "{lines[0]}"'
        )
    return _parse_semantic(parts[2])


def ensure_min_version() -> _Version:
    """Check podman is recent enough and return its version."""
    try:
        version = get_podman_version()
    except ClusterError as exc:
        raise ClusterError(f"failed to check podman version: {exc}") from exc
    if not version.at_least(_parse_semantic(MIN_SUPPORTED_VERSION)):
        raise ClusterError(
            f'podman version "{version}" is too old, '
            f'please upgrade to "{MIN_SUPPORTED_VERSION}" or later'
        )
    return version


def create_anonymous_volume(label: str) -> str:
    """Create an anonymous volume labelled label=true and return its name."""
    name = output(
        command("podman", "volume", "create", "--label", f"{label}=true")
    ).decode("utf-8", "replace")
    return name[:-1] if name.endswith("\n") else name


def get_volumes(label: str) -> list[str]:
    """Names of the volumes carrying label."""
    text = output(
        command("podman", "volume", "ls", "--filter", f"label={label}", "--quiet")
    ).decode("utf-8", "replace")
    if text.endswith("\n"):
        text = text[:-1]
    return text.split("\n")


def delete_volumes(names: list[str]) -> None:
    """Force-remove the named volumes."""
    command("podman", "volume", "rm", "--force", *names).run()


def mount_dev_mapper() -> bool:
    """Whether the backing filesystem is Btrfs or ZFS."""
    try:
        lines = output_lines(
            command("podman", "info", "-f", '{{ index .Store.GraphStatus "Backing Filesystem"}}')
        )
    except RunError:
        return False
    storage = lines[0].strip().lower() if lines else ""
    return storage in ("btrfs", "zfs")