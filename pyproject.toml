[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "openlmm"
version = "0.1.0"
description = "Lidar map management: scan and pose loading, voxel downsampling and dynamic object removal (HMM-MOS, ERASOR)"
requires-python = ">=3.10"
keywords = ["lidar", "point cloud", "mapping", "dynamic object removal", "voxel"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering",
]
dependencies = [
    "numpy",
    "scipy",
    "tqdm",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["openlmm"]

[tool.pytest.ini_options]
addopts = "-ra"
