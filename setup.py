from setuptools import find_packages, setup

setup(
    name="ensemble-engine",
    version="0.1.0",
    description="Declarative ensemble (workflow) execution engine",
    packages=find_packages(include=["ensemble_engine", "ensemble_engine.*"]),
    install_requires=[line for line in open("requirements-core.txt").read().splitlines() if line],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    python_requires=">=3.9",
)
