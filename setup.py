#!/usr/bin/env python

from setuptools import find_packages, setup

setup(
    name="PatientStream",
    version="0.0.1",
    description="Patient-level event streams, task samples and dataset splits from raw clinical tables",
    python_requires=">=3.10",
    install_requires=[
        "polars>=1.18",
        "pyarrow",
        "numpy",
        "torch",
        "hydra-core",
        "omegaconf",
        "ml-mixins<0.1",
        "dill",
        "loguru",
        "tqdm",
    ],
    extras_require={"tests": ["pytest"]},
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"PatientStream.data": ["configs/*.yaml"]},
    # use this to customize global commands available in the terminal after installing the package
    scripts=["scripts/build_dataset.py"],
)
