[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "egress"
version = "1.8.6"
description = "Egress service building blocks: output type and codec rules, pipeline log handling, CPU admission control, handler process management and metrics aggregation."
requires-python = ">=3.11"
dependencies = []
keywords = [
    "egress",
    "recording",
    "streaming",
    "gstreamer",
    "rtmp",
    "hls",
    "prometheus",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["egress"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
