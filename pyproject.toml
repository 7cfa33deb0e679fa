[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "norring"
version = "0.1.0"
description = "A ring file store for NOR flash that can repair itself, with USB HID control request handling"
requires-python = ">=3.10"
dependencies = []
keywords = ["nor-flash", "ring-buffer", "filesystem", "embedded", "hid", "usb"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Topic :: Software Development :: Embedded Systems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["norring"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
