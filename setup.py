from setuptools import setup, find_packages

setup(
    name="tollbooth",
    version="0.1.0",
    packages=find_packages(include=["tollbooth", "tollbooth.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
)
