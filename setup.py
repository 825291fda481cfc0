"""
dbhost
Local database engines without a container runtime: binary provisioning
and process lifecycle management
"""

from setuptools import find_packages, setup

setup(
    name="dbhost",
    version="0.1.0",
    description="Provision and run local database engines without a container runtime",
    author="dbhost contributors",
    license="Apache License 2.0",
    packages=find_packages(include=["dbhost", "dbhost.*"]),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.8.0",
        "psutil>=5.9.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "aioresponses>=0.7.4",
            # aioresponses 0.7.9 cannot build ClientResponse on aiohttp 3.14+
            "aiohttp>=3.8.0,<3.14",
            "ruff>=0.1.0",
        ],
    },
)
