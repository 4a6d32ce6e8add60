[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fdtkit"
version = "0.1.0"
description = "In-memory device trees: building, merging, overlay metadata, and source and YAML output"
requires-python = ">=3.10"
keywords = [
    "device-tree",
    "dts",
    "fdt",
    "embedded",
    "overlay",
    "yaml",
]
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
    "Topic :: Software Development :: Embedded Systems",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["fdtkit"]

[tool.hatch.build.targets.sdist]
include = [
    "fdtkit",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
