"""Startup check that core services and this SDK share a major version."""

from __future__ import annotations

import json
import time
import urllib.request
from typing import Any, Optional

from .config import API_BASE
from .container import configuration_from, logging_client_from

CORE_PRE_RELEASE_VERSION = "master"
CORE_DEVELOPER_VERSION = "0.0.0"
VERSION_MAJOR_INDEX = 0
CORE_METADATA_SERVICE_KEY = "core-metadata"
API_VERSION_ROUTE = API_BASE + "/version"

_REQUEST_TIMEOUT = 5.0


class StartupTimer:
    """Bounds how long startup steps keep retrying."""

    def __init__(self, duration: float = 60.0, interval: float = 1.0) -> None:
        self.duration = duration
        self.interval = interval
        self._start = time.monotonic()

    def has_not_elapsed(self) -> bool:
        """True while the startup duration has not run out."""
        return time.monotonic() < self._start + self.duration

    def sleep_for_interval(self) -> None:
        """Sleep for one retry interval."""
        time.sleep(self.interval)


def _fetch_core_version(base_url: str) -> str:
    with urllib.request.urlopen(base_url + API_VERSION_ROUTE, timeout=_REQUEST_TIMEOUT) as resp:
        body = resp.read()
    data = json.loads(body.decode("utf-8"))
    if not isinstance(data, dict):
        raise ValueError("version response is not a JSON object")
    return str(data.get("version", ""))


class VersionValidator:
    """Checks that core metadata's major version matches the SDK's."""

    def __init__(self, skip_version_check: bool, sdk_version: str) -> None:
        self.skip_version_check = skip_version_check
        self.sdk_version = sdk_version

    def bootstrap_handler(self, container: Any, startup_timer: StartupTimer) -> bool:
        """Return True when the versions are compatible or the check does not apply."""
        logger = logging_client_from(container.get)
        config = configuration_from(container.get)

        if self.skip_version_check:
            logger.info("Skipping core service version compatibility check")
            return True

        # SDK version format: "v{major}.{minor}.{patch}[-dev.{build}]"
        sdk_parts = self.sdk_version.split(".")
        if len(sdk_parts) < 3:
            logger.error("SDK version is malformed: version=%s", self.sdk_version)
            return False

        sdk_parts[VERSION_MAJOR_INDEX] = sdk_parts[VERSION_MAJOR_INDEX].replace("v", "", 1)
        if sdk_parts[VERSION_MAJOR_INDEX] == "0":
            logger.info(
                "Skipping version compatibility check for SDK Beta version or running in debugger: version=%s",
                self.sdk_version,
            )
            return True

        client = config.clients.get(CORE_METADATA_SERVICE_KEY)
        if client is None:
            logger.error(
                "Unable to get version of Core Metadata: Core Metadata missing from Clients configuration"
            )
            return False

        core_version: Optional[str] = None
        error: Optional[Exception] = None
        while startup_timer.has_not_elapsed():
            try:
                core_version = _fetch_core_version(client.url())
            except (OSError, ValueError) as exc:
                error = exc
                logger.warning("Unable to get version of Core Metadata: %s", exc)
                startup_timer.sleep_for_interval()
                continue
            error = None
            break

        if error is not None:
            logger.error("Unable to get version of Core Metadata after retries: %s", error)
            return False

        core_version = core_version or ""

        if core_version == CORE_PRE_RELEASE_VERSION:
            logger.info(
                "Skipping version compatibility check for Core Services Pre-release version: version=%s",
                core_version,
            )
            return True

        if core_version == CORE_DEVELOPER_VERSION:
            logger.info(
                "Skipping version compatibility check for Core Services Developer version: version=%s",
                core_version,
            )
            return True

        core_parts = core_version.split(".")
        if len(core_parts) < 3:
            logger.error("Core Services version is malformed: version=%s", core_version)
            return False

        if core_parts[0] == sdk_parts[0]:
            logger.debug(
                "Confirmed Core Services version (%s) is compatible with SDK's version (%s)",
                core_version,
                self.sdk_version,
            )
            return True

        logger.error(
            "Core Services version (%s) is not compatible with SDK's version(%s)",
            core_version,
            self.sdk_version,
        )
        return False