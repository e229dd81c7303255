"""Setup script for issuepilot package."""

from setuptools import find_packages, setup

setup(
    name="issuepilot",
    version="0.1.0",
    description="Drive GitHub issues through grooming, building and review with AI agents",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={
        "issuepilot": ["prompts/*.md"],
    },
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "issuepilot=issuepilot.cli:main",
            "issuepilot-scheduler=issuepilot.scheduler:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
