"""
LoRAForge — Setup Script
========================
Installs LoRAForge as a local editable package so that all internal
imports (e.g. `from loraforge.adapter.module import AdapterModule`) work
seamlessly from any script or notebook.

Usage:
    cd /path/to/loraforge
    pip install -e .
"""

from setuptools import setup, find_packages

setup(
    name="loraforge",
    version="0.1.0",
    author="Aditya",
    description=(
        "LoRAForge: low-rank adapter training for frozen language models, "
        "with GGUF adapter export"
    ),
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    url="https://github.com/aditya/LoRAForge",
    packages=find_packages(include=["loraforge", "loraforge.*"]),
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.1.0",
        "safetensors>=0.4.0",
        "datasets>=2.14.0",
        "tokenizers>=0.15.0",
        "numpy>=1.24.0",
        "tqdm>=4.65.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
)
