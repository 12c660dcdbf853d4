[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "reversesoxy"
version = "0.1.0"
description = "Reverse SOCKS5 proxy over an authenticated, AES-CTR encrypted tunnel, with agent and relay modes"
requires-python = ">=3.10"
keywords = ["socks5", "proxy", "reverse-proxy", "tunnel", "relay", "aes-ctr"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "cryptography",
    "pyyaml",
    "termcolor",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
reverse-soxy = "reversesoxy.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["reversesoxy"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
