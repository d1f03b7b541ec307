[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "relaybus"
version = "0.1.0"
description = "Modbus relay-board slaves (RTU and TCP), a PZEM energy meter reader, a door monitor with Telegram alerts, and small task helpers"
requires-python = ">=3.10"
dependencies = [
    "pyserial",
]
keywords = ["modbus", "rtu", "tcp", "relay", "pzem", "telegram", "home-automation"]
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
    "Topic :: Home Automation",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
relaybus-rtu = "relaybus.rtu:main"
relaybus-tcp = "relaybus.tcp:main"
relaybus-pzem = "relaybus.pzem:main"
relaybus-door = "relaybus.telegram:main"

[tool.hatch.build.targets.wheel]
packages = ["relaybus"]

[tool.pytest.ini_options]
addopts = "-ra"
