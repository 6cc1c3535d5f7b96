[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "uarchsim"
version = "0.1.0"
description = "Components of a cycle-level out-of-order CPU and DRAM model driven by instruction traces"
requires-python = ">=3.10"
dependencies = []
keywords = ["microarchitecture", "simulator", "cpu", "dram", "trace", "out-of-order"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Education",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: System :: Emulators",
    "Topic :: Scientific/Engineering",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools]
packages = ["uarchsim"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
