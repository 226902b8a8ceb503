# dahdi-lifecycle/setup.py

from setuptools import setup, find_packages

setup(
    name="dahdi_lifecycle",
    version="1.0.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    package_data={"dahdi_lifecycle": ["config/*.yml"]},
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "pydantic>=2.5",
        "PyYAML>=6.0",
        "aiofiles>=23.2",
        "structlog>=24.1",
        "python-json-logger>=3.1"
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27"
        ]
    },
    python_requires=">=3.9",
        entry_points={
        "console_scripts": [
            "dahdi-lifecycle=dahdi_lifecycle.cli:main",
            "dahdi-lifecycle-api=dahdi_lifecycle.api.__main__:main"
        ]
    },
    description="Lifecycle orchestration for DAHDI telephony hardware and the PBX using it",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
    ],
)
