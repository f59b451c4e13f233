[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "logmonitor"
version = "0.1.0"
description = "Core runtime pieces of a remote log monitor: configuration loading, locks, interval scheduling, an in-memory job queue and per-server sweep runners."
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["logs", "monitoring", "integrity", "scheduler", "job-queue"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Logging",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["logmonitor"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
