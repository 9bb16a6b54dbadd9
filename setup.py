#!/usr/bin/env python
# -*- coding: utf-8 -*-
# @QK

"""Packaging for PEStrata.

@QK
"""

from setuptools import setup, find_packages
from pathlib import Path

ROOT = Path(__file__).parent
requirements = [
    r.strip()
    for r in (ROOT / "requirements.txt").read_text(encoding="utf-8").splitlines()
    if r.strip() and not r.startswith("#")
]

long_description = ""
readme_md = ROOT / "README.md"
if readme_md.exists():
    long_description = readme_md.read_text(encoding="utf-8")

setup(
    name="pestrata",
    version="0.1.0",
    description="PEStrata - structural anomaly and reverse-engineering hint analysis for PE files",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="PEStrata contributors",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    package_data={
        "pestrata": [
            "config/*.json",
            "templates/*.j2",
            "data/signatures/*.yar",
        ]
    },
    install_requires=requirements,
    extras_require={
        "dev": [
            "pytest>=7",
            "ruff>=0.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "pestrata=pestrata.cli:main",
        ]
    },
    python_requires=">=3.9",
)
