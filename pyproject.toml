[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "kuasar"
version = "0.1.0"
description = "Mount helpers, storage bookkeeping, a quark sandboxer and shim building blocks for container sandboxes"
requires-python = ">=3.10"
dependencies = []
keywords = ["containerd", "sandbox", "container", "mount", "vsock", "quark"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[tool.setuptools.packages.find]
include = ["kuasar*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
