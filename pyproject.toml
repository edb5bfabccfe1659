[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cyclops"
version = "1.9.1"
description = "Observe Kubernetes node groups for drift and request node cycling, with draining, metrics and Slack notifications."
requires-python = ">=3.10"
keywords = [
    "kubernetes",
    "nodes",
    "cycling",
    "node-groups",
    "drain",
    "daemonset",
    "observer",
    "prometheus",
    "slack",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "requests",
    "backoff",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["cyclops"]

[tool.hatch.build.targets.sdist]
include = [
    "cyclops",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
