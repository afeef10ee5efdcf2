"""
modqueue setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="modqueue",
    version="1.0.0",
    description="modqueue — leased, priority-ordered moderation task queue",
    packages=find_packages(include=["modqueue", "modqueue.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "modqueue=modqueue.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "psycopg2-binary>=2.9",
        "pydantic>=2.5",
        "redis>=5.0",
        "celery[redis]>=5.3",
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
)
