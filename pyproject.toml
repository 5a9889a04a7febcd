[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodeeraser"
version = "1.1.0b0"
description = "Work out which container images on a node are unused and remove them through a CRI client, with exclusion lists, a scanner hand-off and metrics."
requires-python = ">=3.10"
keywords = [
    "containers",
    "cri",
    "images",
    "garbage-collection",
    "kubernetes",
    "vulnerability",
    "cleanup",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
nodeeraser-eraser = "nodeeraser.eraser:main"
nodeeraser-collector = "nodeeraser.collector:main"

[tool.hatch.build.targets.wheel]
packages = ["nodeeraser"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
