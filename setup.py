"""Setup script for the slideforge package."""

from setuptools import setup, find_packages

setup(
    name="slideforge",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "prometheus-client>=0.19",
        "tenacity>=8.2",
        "httpx>=0.25",
        "langchain-core>=0.2",
        "langchain-ollama>=0.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
        ],
    },
    description="slideforge - multi-model presentation generation pipeline",
    author="slideforge Team",
)
