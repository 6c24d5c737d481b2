#!/usr/bin/env python3
from setuptools import setup, find_packages

setup(
    name="mcp-chrome-proxy",
    version="1.0.0",
    description="Expose a local chrome-devtools-mcp server to remote MCP clients over HTTP",
    package_dir={"": "src"},
    packages=find_packages("src"),
    include_package_data=True,
    install_requires=[
        "fastapi>=0.110.0",
        "uvicorn>=0.29.0",
        "pydantic>=2.5.0"
    ],
    extras_require={
        "test": [
            "aiohttp>=3.9.0",
            "httpx>=0.25.0",
            "pytest>=7.0"
        ]
    },
    entry_points={
        "console_scripts": [
            "mcp-chrome-proxy=mcp_chrome_proxy.__main__:main",
        ],
    },
    python_requires=">=3.10",
)
