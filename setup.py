from setuptools import setup, find_packages

setup(
    name="rules-core",
    version="0.1.0",
    description="Remote-first rule store with local fallback, rule queries and cached process metrics",
    author="Sumit Asthana",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    py_modules=["cli"],
    package_data={"config": ["*.yaml"]},
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "structlog>=23.0",
        "httpx>=0.27",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
            "pytest-cov>=4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "rules-core=cli:main",
        ],
    },
)
