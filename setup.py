from setuptools import setup, find_packages

setup(
    name="weightvault",
    version="1.0.0",
    description="Adaptive model compression with versioned artifact storage",
    author="WeightVault Team",
    packages=find_packages(include=["weightvault", "weightvault.*", "vault_api", "vault_api.*"]),
    install_requires=[
        "torch>=2.0.0",
        "numpy",
        "fastapi",
        "uvicorn",
        "pydantic>=2.0",
        "pydantic-settings",
        "sqlalchemy[asyncio]>=2.0",
        "aiosqlite",
        "boto3",
        "psutil",
    ],
    extras_require={
        "postgres": ["asyncpg"],
        "dev": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "httpx",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires='>=3.9',
)
