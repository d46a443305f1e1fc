[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "swapsession"
version = "0.1.0"
description = "Session-level want tracking, peer selection and broadcast scheduling for block exchange"
requires-python = ">=3.10"
dependencies = []
keywords = ["block exchange", "sessions", "content addressing", "peer-to-peer", "wantlist"]
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
packages = ["swapsession"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
