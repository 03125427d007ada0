import json
import platform
import sys

from ebscsi.version import get_version, get_version_json


def test_get_version():
    info = get_version()
    assert info.driver_version == ""
    assert info.git_commit == ""
    assert info.build_date == ""
    assert info.python_version == platform.python_version()
    assert info.implementation == sys.implementation.name
    assert info.platform == f"{sys.platform}/{platform.machine()}"


def test_get_version_json():
    text = get_version_json()
    data = json.loads(text)
    assert list(data) == [
        "driverVersion",
        "gitCommit",
        "buildDate",
        "pythonVersion",
        "implementation",
        "platform",
    ]
    assert data["driverVersion"] == ""
    assert data["pythonVersion"] == platform.python_version()
    assert text.startswith('{\n  "driverVersion": ""')