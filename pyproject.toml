[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "edgepipe"
version = "0.1.0"
description = "Function pipelines, store-and-forward retries, REST handlers and an encrypt-then-MAC AEAD for edge application services"
requires-python = ">=3.10"
keywords = ["edge", "pipeline", "iot", "store-and-forward", "aead"]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]
dependencies = [
    "cryptography",
    "cbor2",
    "werkzeug",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["edgepipe"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
