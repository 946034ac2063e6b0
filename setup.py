from setuptools import setup, find_packages

setup(
    name="charter-ops",
    version="1.0.0",
    packages=find_packages(include=["charter_ops", "charter_ops.*"]),
    install_requires=[
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "python-dotenv>=1.0",
        "supabase>=2.0",
        "python-dateutil>=2.8",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    python_requires=">=3.8",
)
