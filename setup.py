#!/usr/bin/env python3
"""Setup script for the reminder engine."""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="reminder-engine",
    version="1.0.0",
    author="Your Name",
    description="Reminder scheduling and recurrence engine with restart-safe, at-most-once delivery",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["reminder_engine", "reminder_engine.*"]),
    python_requires=">=3.9",
    install_requires=[
        "PyQt6>=6.4.0",
        "python-dateutil>=2.8.2",
        "SQLAlchemy>=2.0",
        "tomli>=2.0.0;python_version<'3.11'",
        "tzdata;platform_system=='Windows'",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "reminder-engine=reminder_engine.app:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: X11 Applications :: Qt",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Office/Business :: Scheduling",
    ],
)
