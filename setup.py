#!/usr/bin/env python3
"""
Setup script for ssd.
Installs the ssd package and the ``ssd`` console command.
"""

from setuptools import setup, find_packages

# Most configuration is in pyproject.toml
# This file exists for compatibility with older pip versions

setup(
    packages=find_packages(include=["ssd", "ssd.*"]),
)
