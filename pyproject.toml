[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "netperf3"
version = "0.1.0"
description = "Building blocks for network throughput testing: timers, unit formatting, socket helpers and TCP/UDP stream handling"
requires-python = ">=3.10"
dependencies = []
keywords = ["network", "throughput", "bandwidth", "tcp", "udp", "jitter", "sockets"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: System :: Benchmark",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["netperf3"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
