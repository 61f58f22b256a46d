"""
Version handling for the self-upgrade orchestrator.

- Validation of requested target versions ("latest" or vX.Y.Z[-suffix])
- Normalized comparison of version strings
- Resolution of "latest" through the release API
"""

from __future__ import annotations

import re
from typing import Any

import httpx

from mesh_upgrade import __version__
from mesh_upgrade.errors import InvalidArgumentError, UnavailableError
from mesh_upgrade.logging import get_logger

logger = get_logger(__name__)

LATEST = "latest"

# Accepts: 2.14.0, v2.14.0, 2.14.0-beta.1, v3.0.0-rc-2
TARGET_VERSION_PATTERN = re.compile(r"^v?\d+\.\d+\.\d+(-[a-zA-Z0-9.-]+)?$")

DEFAULT_RELEASES_URL = (
    "https://api.github.com/repos/meshmonitor/meshmonitor/releases/latest"
)


def validate_target_version(value: Any) -> str:
    """
    Validate a requested target version.

    Args:
        value: Raw value from the caller. None means "latest".

    Returns:
        The validated version string, unchanged.

    Raises:
        InvalidArgumentError: If the value is not a string or does not match
            "latest" / vX.Y.Z[-suffix].
    """
    if value is None:
        return LATEST

    if not isinstance(value, str):
        raise InvalidArgumentError(
            "targetVersion must be a string",
            details={"target_version": repr(value)},
        )

    if value == LATEST or TARGET_VERSION_PATTERN.match(value):
        return value

    raise InvalidArgumentError(
        "Invalid version format. Expected 'latest' or semver (e.g., v2.14.0)",
        details={"target_version": value},
    )


def normalize_version(version: str) -> str:
    """Strip surrounding whitespace and a single leading 'v'."""
    version = version.strip()
    if version[:1] in ("v", "V"):
        return version[1:]
    return version


def versions_equal(v1: str | None, v2: str | None) -> bool:
    """Compare two versions ignoring a leading 'v'."""
    if v1 is None or v2 is None:
        return False
    return normalize_version(v1) == normalize_version(v2)


def get_current_version(override: str | None = None) -> str:
    """Return the running version, preferring a configured override."""
    return normalize_version(override) if override else __version__


class VersionSource:
    """
    Reads the latest published release from a GitHub-style releases API.

    The endpoint must return a JSON object with a ``tag_name`` field.
    """

    def __init__(
        self,
        releases_url: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.releases_url = releases_url or DEFAULT_RELEASES_URL
        self.timeout = timeout

    async def fetch_latest_version(self) -> str:
        """
        Fetch the newest release version.

        Returns:
            The release version without a leading 'v'.

        Raises:
            UnavailableError: If the API is unreachable or the payload is unusable.
        """
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    self.releases_url,
                    timeout=self.timeout,
                    headers={"Accept": "application/vnd.github+json"},
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UnavailableError(
                f"Failed to query release API: {e}",
                details={"url": self.releases_url},
            ) from e

        tag = payload.get("tag_name") if isinstance(payload, dict) else None
        if not isinstance(tag, str) or not TARGET_VERSION_PATTERN.match(tag):
            raise UnavailableError(
                "Release API returned no usable tag_name",
                details={"url": self.releases_url, "tag_name": repr(tag)},
            )

        version = normalize_version(tag)
        logger.debug("Resolved latest release", extra={"version": version})
        return version

    async def resolve(self, target_version: str) -> str:
        """
        Resolve "latest" to a concrete version.

        Returns the target unchanged when it is already concrete, or when the
        release API cannot be reached.
        """
        if target_version != LATEST:
            return target_version

        try:
            return await self.fetch_latest_version()
        except UnavailableError as e:
            logger.warning(
                "Could not resolve latest version, keeping 'latest'",
                extra={"error": e.message},
            )
            return LATEST
