[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "whisp"
version = "0.1.0"
description = "Small terminal chat over Tor: a session relay server and a SOCKS5 client"
requires-python = ">=3.10"
dependencies = []
keywords = ["chat", "tor", "socks5", "terminal", "sessions"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
whisp-server = "whisp.server:main"
whisp-client = "whisp.client:main"

[tool.hatch.build.targets.wheel]
packages = ["whisp"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
