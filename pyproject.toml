[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ebscsi"
version = "1.1.1"
description = "Node-side volume staging, publishing and sizing logic for EBS block volumes"
requires-python = ">=3.10"
dependencies = []
keywords = ["csi", "ebs", "block-storage", "mount", "nvme", "kubernetes"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ebscsi"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
