[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kmasim"
version = "0.1.0"
description = "Simulated kernel memory allocators (dummy, power-of-two free list, buddy) with trace-driven and randomised test harnesses"
requires-python = ">=3.10"
dependencies = []
keywords = ["memory allocator", "buddy system", "free list", "kernel", "simulation", "operating systems"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
kmasim-trace = "kmasim.trace:main"
kmasim-competition = "kmasim.competition:main"

[tool.hatch.build.targets.wheel]
packages = ["kmasim"]

[tool.pytest.ini_options]
addopts = "-ra"
