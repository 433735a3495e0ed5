[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "spirecsi"
version = "0.1.0"
description = "Ephemeral inline volume node driver that writes SPIRE workload identities into pod volumes"
requires-python = ">=3.10"
dependencies = []
keywords = ["csi", "spiffe", "spire", "kubernetes", "cgroups", "workload-identity"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
spiffe-csi-driver = "spirecsi.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["spirecsi"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
