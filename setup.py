from setuptools import setup, find_packages

setup(
    name="editshield",
    version="1.0.0",
    description="EditShield security engine for in-page content editors",
    author="jetgause",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "dataclasses-json>=0.6.0",
        "requests>=2.31.0",
        "python-dotenv>=1.0.0",
        "bleach>=6.0.0",
        "fastapi>=0.104.0",
        "pydantic>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "httpx>=0.25.0",
        ],
    },
    python_requires=">=3.8",
)
