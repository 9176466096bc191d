[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "webctx"
version = "0.1.0"
description = "A per-request context for HTTP handlers: middleware flow, request input, content negotiation and response rendering."
requires-python = ">=3.10"
dependencies = []
keywords = ["http", "web", "context", "middleware", "rendering", "negotiation"]
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
    "Topic :: Internet :: WWW/HTTP",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["webctx"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
