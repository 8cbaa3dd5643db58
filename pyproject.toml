[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "eclique"
version = "0.1.0"
description = "Proof-of-authority (Clique) consensus engine with vote snapshots, header verification and sealing"
requires-python = ">=3.10"
keywords = ["clique", "proof-of-authority", "consensus", "ethereum", "blockchain", "rlp", "secp256k1"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "pycryptodome",
    "cachetools",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["eclique"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
