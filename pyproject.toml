[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ktp"
version = "0.1.0"
description = "Reliable, flow-controlled message transport over UDP with sliding windows and simulated loss"
requires-python = ">=3.10"
dependencies = []
keywords = ["udp", "reliable transport", "sliding window", "flow control", "networking"]
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
ktp-send = "ktp.sender:main"
ktp-recv = "ktp.receiver:main"

[tool.hatch.build.targets.wheel]
packages = ["ktp"]

[tool.pytest.ini_options]
addopts = "-ra"
