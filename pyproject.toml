[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "limaconf"
version = "0.1.0"
description = "Load, fill in defaults for and validate virtual machine instance configurations and their host network settings"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["virtual-machine", "qemu", "configuration", "yaml", "networking", "sudoers"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: MacOS",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["limaconf"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
