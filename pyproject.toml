[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "portshare"
version = "0.1.0"
description = "Share local services over a tailnet: path diagnostics, endpoint bypass routes, firewall rules and loopback bridges."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "tailscale",
    "tailnet",
    "networking",
    "port-forwarding",
    "firewall",
    "diagnostics",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: Microsoft :: Windows",
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

[tool.hatch.build.targets.wheel]
packages = ["portshare"]

[tool.hatch.build.targets.sdist]
include = ["portshare", "tests"]

[tool.pytest.ini_options]
testpaths = ["tests"]
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
