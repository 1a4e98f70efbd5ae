#!/usr/bin/env python3
"""
Setup script for the Dispatch Call Simulator module.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="dispatch-call-simulator",
    version="1.0.0",
    author="Your Name",
    author_email="your.email@example.com",
    description="Real-time 911 call-taking simulator with an interruptible LLM caller",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/dispatch-call-simulator",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Sound/Audio :: Speech",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    python_requires=">=3.10",
    install_requires=[
        "numpy",
        "sounddevice",
        "websockets>=14",
        "ollama>=0.4",
        "httpx",
        "pydantic>=2.0.0",
        "python-dotenv",
    ],
    extras_require={
        "edge-tts": [
            "edge-tts",
            "aiohttp",
            "pydub",
            "simpleaudio",
        ],
        "all": [
            "edge-tts",
            "aiohttp",
            "pydub",
            "simpleaudio",
        ],
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "dispatch-call-simulator=dispatch_call_simulator.cli:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
