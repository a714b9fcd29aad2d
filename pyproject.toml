[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "streamlog"
version = "0.1.0"
description = "Segmented, checksummed append-only data log storage with index files, offset tracking and generation state for a streaming broker"
requires-python = ">=3.10"
dependencies = []
keywords = ["streaming", "log", "segment", "broker", "storage", "replication"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["streamlog"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
