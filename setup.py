from setuptools import setup, find_packages

setup(
    name="deep-report",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "openai-agents>=0.0.14",
        "pydantic>=2.0",
        "python-dotenv>=1.0.0",
        "beautifulsoup4>=4.12.0",
        "aiohttp>=3.8.0",
        "tqdm>=4.65.0",
    ],
    extras_require={
        "dev": [
            "pytest==7.4.*",
            "pytest-mock==3.11.*",
            "pytest-asyncio>=0.21.0",
        ],
        "tracing": [
            "logfire>=0.40.0",
            "opentelemetry-sdk>=1.20.0",
            "opentelemetry-exporter-otlp-proto-http>=1.20.0",
        ],
    },
    python_requires=">=3.9",
    description="A parallel deep-research pipeline that turns one query into a cited, confidence-scored report",
)
