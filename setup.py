#!/usr/bin/env python
"""Azure CLI Extension: az mcp -- capability router for Azure MCP tool providers."""

from setuptools import find_packages, setup

VERSION = "0.1.0b1"
CLASSIFIERS = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "License :: OSI Approved :: MIT License",
]

DEPENDENCIES = [
    "knack>=0.11.0",
    "pyyaml>=6.0",
    "requests>=2.28.0",
    "rich>=13.0.0",
    # Intent-resolution prompt templates
    "jinja2>=3.1.0",
    # Terminating provider process trees (azd spawns the extension binary).
    # Pin psutil -- only 7.1.1 ships a pre-built win32 binary wheel.
    "psutil>=5.6.3,<=7.1.1",
]

TEST_DEPENDENCIES = [
    "pytest>=7.0",
]

setup(
    name="az-mcp",
    version=VERSION,
    description="Azure CLI extension that routes MCP tool calls to Azure tool providers",
    long_description="Runs a Model Context Protocol server exposing a single 'azure' tool that "
                     "discovers, starts and proxies Azure MCP tool providers on demand.",
    license="MIT",
    author="Microsoft",
    author_email="",
    classifiers=CLASSIFIERS,
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=DEPENDENCIES,
    extras_require={"test": TEST_DEPENDENCIES},
    package_data={
        "azext_mcp": [
            "azext_metadata.json",
            "resources/*.json",
        ]
    },
    entry_points={
        "azure.cli.extensions": [
            "mcp=azext_mcp",
        ]
    },
)
