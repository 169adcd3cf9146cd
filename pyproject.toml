[build-system]
requires = ["setuptools>=64"]
build-backend = "setuptools.build_meta"

[project]
name = "streamlog"
version = "0.1.0"
description = "Segmented, checksummed append-only log storage with index files, offset tracking and generation state for streaming brokers"
requires-python = ">=3.10"
dependencies = []
keywords = ["log", "segments", "streaming", "storage", "broker", "offsets", "generations"]
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
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools.packages.find]
include = ["streamlog*"]

[tool.pytest.ini_options]
addopts = "-ra"
