[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "icopatch"
version = "0.1.0"
description = "Redirect a PE image's import calls through generated stubs in a new code section"
requires-python = ">=3.10"
dependencies = []
keywords = ["pe", "portable-executable", "imports", "iat", "patching", "obfuscation", "x86", "x64"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Code Generators",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
icopatch = "icopatch.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["icopatch"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
