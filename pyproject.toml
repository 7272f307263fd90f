[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "imagefs"
version = "1.9.2"
description = "Filesystem helpers for building container image layers: layered change tracking, tar extraction, ignore lists, .dockerignore matching and Dockerfile argument resolution"
requires-python = ">=3.10"
dependencies = []
keywords = ["container", "image", "layers", "tar", "whiteout", "dockerfile", "dockerignore", "filesystem"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Topic :: System :: Archiving :: Packaging",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["imagefs"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
