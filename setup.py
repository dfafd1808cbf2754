#!/usr/bin/env python3
"""
Setup script for collector-engine.
Installs the updater, dockerprobe and enrichment watcher entry points.
"""

from setuptools import setup, find_packages

# Most configuration is in pyproject.toml
# This file exists for compatibility with older pip versions

setup(
    packages=find_packages(include=["collector_engine", "collector_engine.*"]),
)
