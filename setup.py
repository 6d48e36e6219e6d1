from setuptools import setup, find_packages

setup(
    name="chemquest-progression",
    version="0.1.0",
    packages=find_packages(exclude=["progression.tests", "progression.tests.*"]),
    install_requires=[
        "fastapi>=0.95.0,<0.100.0",
        "uvicorn>=0.15.0",
        "pydantic>=1.10.0,<2.0.0",
        "redis>=4.2.0",
        "pyyaml>=6.0",
        "python-dotenv>=0.19.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "httpx>=0.23,<0.28",
        ],
    },
    python_requires=">=3.9",
)
