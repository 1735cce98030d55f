#!/usr/bin/env python3
"""
changerelay Setup Script
Install the changerelay notification pipeline and CLI.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

setup(
    name="changerelay",
    version="0.1.0",
    description="Idempotent multi-tenant change notification pipeline on a version-tagged object store",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    install_requires=[
        # Core dependencies
        "click>=8.0.0",
        "pydantic>=2.0.0",
        "pyyaml>=6.0.0",
        "aiohttp>=3.8.0",

        # Object store backends
        "aiosqlite>=0.19.0",
        "redis>=5.0.1",
        "aiofiles>=23.1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=23.0.0",
            "mypy>=1.0.0",
            "ruff>=0.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "changerelay=changerelay.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: System :: Distributed Computing",
    ],
    keywords="notifications idempotency optimistic-concurrency multi-tenant async",
)
