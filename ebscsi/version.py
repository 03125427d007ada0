"""Driver version information."""

from __future__ import annotations

import json
import platform
import sys
from dataclasses import dataclass

DRIVER_VERSION = ""
GIT_COMMIT = ""
BUILD_DATE = ""


@dataclass(frozen=True)
class VersionInfo:
    driver_version: str
    git_commit: str
    build_date: str
    python_version: str
    implementation: str
    platform: str

    def to_dict(self) -> dict[str, str]:
        return {
            "driverVersion": self.driver_version,
            "gitCommit": self.git_commit,
            "buildDate": self.build_date,
            "pythonVersion": self.python_version,
            "implementation": self.implementation,
            "platform": self.platform,
        }


def get_version() -> VersionInfo:
    return VersionInfo(
        driver_version=DRIVER_VERSION,
        git_commit=GIT_COMMIT,
        build_date=BUILD_DATE,
        python_version=platform.python_version(),
        implementation=sys.implementation.name,
        platform=f"{sys.platform}/{platform.machine()}",
    )


def get_version_json() -> str:
    """Version information as indented JSON."""
    return json.dumps(get_version().to_dict(), indent=2)