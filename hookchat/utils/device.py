"""Stable device identity and platform metadata for webhook payloads."""

import logging
import platform
import uuid
from dataclasses import dataclass
from pathlib import Path

from hookchat import __version__
from hookchat.utils.paths import get_data_dir

logger = logging.getLogger(__name__)

DEVICE_ID_FILE = "device_id"


@dataclass(frozen=True)
class DeviceInfo:
    """Identity and platform facts sent with every message."""

    device_id: str
    platform: str
    app_version: str
    device_model: str
    os_version: str


def get_device_id(data_dir: Path | None = None) -> str:
    """Return the persisted device UUID, creating it on first use.

    Args:
        data_dir: Directory holding the device_id file. Defaults to the
            user data dir.
    """
    directory = data_dir or get_data_dir()
    path = directory / DEVICE_ID_FILE
    if path.exists():
        existing = path.read_text().strip()
        if existing:
            return existing
    directory.mkdir(parents=True, exist_ok=True)
    device_id = str(uuid.uuid4())
    path.write_text(device_id)
    logger.info("Generated new device id at %s", path)
    return device_id


def load_device_info(data_dir: Path | None = None) -> DeviceInfo:
    """Collect device identity and platform details."""
    return DeviceInfo(
        device_id=get_device_id(data_dir),
        platform=platform.system() or "unknown",
        app_version=__version__,
        device_model=platform.machine() or "unknown",
        os_version=platform.release() or "unknown",
    )
