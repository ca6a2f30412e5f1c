[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sqld"
version = "0.1.0"
description = "SQL daemon serving an SQLite database over the PostgreSQL wire protocol and HTTP"
requires-python = ">=3.10"
keywords = ["sqlite", "postgresql", "wire-protocol", "database", "server", "http", "websocket"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Programming Language :: SQL",
    "Topic :: Database :: Database Engines/Servers",
    "Typing :: Typed",
]
dependencies = [
    "aiohttp",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
sqld = "sqld.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["sqld"]

[tool.hatch.build.targets.sdist]
include = ["sqld", "tests", "README.md", "pyproject.toml"]

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
