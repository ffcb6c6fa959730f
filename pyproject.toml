[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "shardraft"
version = "0.1.0"
description = "Raft consensus peer, persistent state store, replicated log, and clerks for a sharded key/value service"
requires-python = ">=3.10"
keywords = ["raft", "consensus", "replication", "sharding", "key-value", "distributed-systems"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: System :: Distributed Computing",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["shardraft"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
