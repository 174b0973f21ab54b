"""Pulling node images and probing the docker host."""

from __future__ import annotations

import json
import logging
import time

from kindprov.common import required_node_images
from kindprov.model import Cluster, ClusterError, Status
from kindprov.process import RunError, command, output_lines

_log = logging.getLogger(__name__)

_DIGEST_MARKER = "@sha256:"


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
        command("docker", "inspect", "--type=image", image).run()
    except RunError:
        pull(logger, image, retries)
        return True
    logger.debug("Image: %s present locally", image)
    return False


def _try_pull(image: str) -> RunError | None:
    try:
        command("docker", "pull", image).run()
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
    """Return a human friendly name and the pullable name of image."""
    if _DIGEST_MARKER in image:
        return image.split(_DIGEST_MARKER)[0], image
    return image, image


def is_available() -> bool:
    """Whether the docker command line is installed and working."""
    try:
        lines = output_lines(command("docker", "-v"))
    except RunError:
        return False
    return len(lines) == 1 and lines[0].startswith("Docker version")


def userns_remap() -> bool:
    """Whether user namespace remapping is enabled in dockerd."""
    try:
        lines = output_lines(
            command("docker", "info", "--format", "'{{json .SecurityOptions}}'")
        )
    except RunError:
        return False
    return bool(lines) and "name=userns" in lines[0]


def mount_dev_mapper() -> bool:
    """Whether the storage driver or backing filesystem needs /dev/mapper."""
    try:
        lines = output_lines(command("docker", "info", "-f", "{{.Driver}}"))
    except RunError:
        return False
    if len(lines) != 1:
        return False
    storage = lines[0].strip().lower()
    if storage in ("btrfs", "zfs", "devicemapper"):
        return True

    try:
        lines = output_lines(command("docker", "info", "-f", "{{json .DriverStatus }}"))
    except RunError:
        return False
    if len(lines) != 1:
        return False
    try:
        entries = json.loads(lines[0])
    except ValueError:
        return False
    for item in entries or []:
        if item and item[0] == "Backing Filesystem":
            storage = item[1].lower() if len(item) > 1 else ""
            break
    return storage in ("btrfs", "zfs", "xfs")