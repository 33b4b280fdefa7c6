[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vecagg"
version = "0.1.0"
description = "Step-batched vector aggregation operators and query result assembly for time-series queries"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "time-series",
    "aggregation",
    "promql",
    "topk",
    "quantile",
    "histogram",
]
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
    "Topic :: Database",
    "Topic :: Scientific/Engineering :: Information Analysis",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
    "hypothesis",
]

[tool.hatch.build.targets.wheel]
packages = ["vecagg"]

[tool.hatch.build.targets.sdist]
include = [
    "vecagg",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
