[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "yoloai"
version = "0.1.0"
description = "Sandbox runtimes for coding agents (macOS seatbelt profiles, Tart VMs, Docker build resources) and git tools to apply their changes."
requires-python = ">=3.10"
dependencies = []
keywords = ["sandbox", "agent", "tart", "seatbelt", "sandbox-exec", "docker", "git", "patch"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: MacOS",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["yoloai"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
