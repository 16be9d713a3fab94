#!/usr/bin/env python3
"""
Setup script for the cluster manager.
Installs the cluster_manager package and its console script.
"""

from setuptools import setup, find_packages

setup(
    name="cluster-manager",
    version="0.3.0",
    description="ClickHouse cluster manager for manufacturing telemetry",
    python_requires=">=3.10",
    packages=find_packages(include=["cluster_manager", "cluster_manager.*"]),
    install_requires=[
        "fastapi>=0.100",
        "uvicorn>=0.23",
        "pydantic>=2.0",
        "httpx>=0.24",
        "asyncpg>=0.28",
        "aiofiles>=23.0",
        "pyyaml>=6.0",
        "cryptography>=41.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "cluster-manager=cluster_manager.__main__:main",
        ],
    },
)
