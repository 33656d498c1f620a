[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kvs"
version = "0.1.0"
description = "A persistent log-structured key/value store with a TCP server and client"
requires-python = ">=3.10"
dependencies = []
keywords = ["key-value", "database", "log-structured", "storage", "server"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[project.scripts]
kvs-client = "kvs.client_cli:main"
kvs-server = "kvs.server_cli:main"

[tool.hatch.build.targets.wheel]
packages = ["kvs"]

[tool.pytest.ini_options]
addopts = "-ra"
