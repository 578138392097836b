"""
RestGen - Generic REST routes for SQLAlchemy models on FastAPI
Install: pip install -e .
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="restgen",
    version="1.0.0",
    author="NexaFlow Team",
    author_email="",
    description="Generic CRUD routes, auth and access control for SQLAlchemy models on FastAPI",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["restgen", "restgen.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Framework :: FastAPI",
    ],
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.100.0",
        "uvicorn>=0.20.0",
        "sqlalchemy[asyncio]>=2.0.0",
        "pydantic>=2.0.0",
        "python-jose>=3.3.0",
        "passlib>=1.7.4",
        "bcrypt>=4.0.0,<4.1",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "httpx>=0.24.0",
            "aiosqlite>=0.19.0",
            "black>=23.0",
            "ruff>=0.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "restgen=restgen.cli:cli_main",
        ],
    },
    keywords="fastapi, sqlalchemy, rest, crud, api, authentication, access-control",
)
