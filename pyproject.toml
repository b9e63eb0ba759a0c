[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mictcp"
version = "0.1.0"
description = "A small TCP-like transport with partial reliability, carried over UDP datagrams"
requires-python = ">=3.10"
dependencies = []
keywords = ["tcp", "udp", "transport", "protocol", "networking", "partial reliability", "rtp"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
mictcp-client = "mictcp.client:main"
mictcp-server = "mictcp.server:main"
mictcp-gateway = "mictcp.gateway:main"

[tool.hatch.build.targets.wheel]
packages = ["mictcp"]

[tool.hatch.build.targets.sdist]
include = ["mictcp", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
