[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rpcwire"
version = "0.1.0"
description = "Asyncio JSON-RPC transports over HTTP, WebSocket and IPC sockets, with batching and subscriptions"
requires-python = ">=3.10"
keywords = ["json-rpc", "rpc", "ethereum", "websocket", "ipc", "asyncio", "transport"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet",
    "Typing :: Typed",
]
dependencies = [
    "httpx",
    "websockets",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["rpcwire"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
