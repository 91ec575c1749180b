[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dsobackend"
version = "0.1.0"
description = "Hessian accumulators, residual structures, projections and pixel selection for a stereo direct sparse odometry back-end"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["odometry", "slam", "bundle adjustment", "schur complement", "hessian", "computer vision"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Image Processing",
    "Topic :: Scientific/Engineering :: Mathematics",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["dsobackend"]

[tool.pytest.ini_options]
addopts = "-ra"
