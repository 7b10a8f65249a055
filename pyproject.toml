[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wsbridge"
version = "0.1.0"
description = "JSON event and remote-call bridge over WebSocket, with a sans-IO frame-level protocol engine"
requires-python = ">=3.10"
keywords = ["websocket", "rpc", "json", "events", "bridge", "sans-io"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "websockets>=12.0",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
wsbridge-extend = "wsbridge.extend:main"

[tool.hatch.build.targets.wheel]
packages = ["wsbridge"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
