[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ktpsock"
version = "0.1.0"
description = "Reliable, flow-controlled message transport over UDP with sliding windows and retransmission"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "udp",
    "reliable transport",
    "sliding window",
    "flow control",
    "retransmission",
    "networking",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
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

[project.scripts]
ktpsock-service = "ktpsock.service:main"
ktpsock-send = "ktpsock.sender:main"
ktpsock-receive = "ktpsock.receiver:main"

[tool.hatch.build.targets.wheel]
packages = ["ktpsock"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
