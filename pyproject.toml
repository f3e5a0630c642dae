[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "phantom"
version = "4.0.0"
description = "FakeTCP session types, framed TCP and WebSocket transports, NAT traversal and process privilege helpers for a proxy server"
requires-python = ">=3.12"
keywords = ["proxy", "websocket", "faketcp", "nat", "framing", "sandbox", "privileges"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "aiohttp",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["phantom"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py312"

[tool.mypy]
python_version = "3.12"
warn_unused_ignores = true
