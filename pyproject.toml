[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dtmerge"
version = "0.1.0"
description = "Merge device tree overlays into a flattened device tree blob"
requires-python = ">=3.10"
dependencies = []
keywords = ["device-tree", "dtb", "dtbo", "overlay", "fdt", "embedded"]
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
    "Topic :: Software Development :: Embedded Systems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["dtmerge"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
