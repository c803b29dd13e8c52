[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rfmpd"
version = "0.5.2"
description = "RFMP daemon: resilient mesh messaging over AX.25 packet radio"
requires-python = ">=3.10"
keywords = ["ax25", "kiss", "packet-radio", "ham-radio", "mesh", "direwolf", "messaging"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Ham Radio",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
rfmpd = "rfmpd.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["rfmpd"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
