[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wiretap"
version = "0.1.0"
description = "Command-line network packet analyzer: live capture, reading, filtering and export of pcap captures"
requires-python = ">=3.10"
keywords = ["pcap", "pcapng", "packet", "network", "analyzer", "capture", "tcp", "export"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
wiretap = "wiretap.commands:main"

[tool.hatch.build.targets.wheel]
packages = ["wiretap"]

[tool.pytest.ini_options]
addopts = "-ra"
