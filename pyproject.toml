[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "eventstereo"
version = "0.1.0"
description = "Depth mapping for stereo event cameras: block matching, event matching, inverse-depth refinement, fusion and regularisation."
requires-python = ">=3.10"
keywords = ["event camera", "stereo", "depth estimation", "time surface", "mapping"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Processing",
]
dependencies = [
    "numpy",
    "scipy",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["eventstereo"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
