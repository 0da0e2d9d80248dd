#!/usr/bin/env python3

"""u2stream setup script."""

import os

from setuptools import find_packages, setup

requirements = {
    "install": [
        "typeguard",
        "torch",
        "torchaudio",
        "numpy",
        "pyyaml",
        "soundfile",
    ],
    "test": [
        "pytest",
    ],
}

install_requires = requirements["install"]
extras_require = {
    k: v for k, v in requirements.items() if k not in ["install", "setup"]
}

dirname = os.path.dirname(__file__)
version_file = os.path.join(dirname, "u2stream", "version.txt")
with open(version_file, "r") as f:
    version = f.read().strip()
setup(
    name="u2stream",
    version=version,
    description="u2stream: streaming CTC decoding with attention rescoring",
    long_description=open(os.path.join(dirname, "README.md"), encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    license="Apache Software License",
    packages=find_packages(include=["u2stream*"]),
    package_data={"u2stream": ["version.txt"]},
    install_requires=install_requires,
    extras_require=extras_require,
    entry_points={
        "console_scripts": ["u2stream-decode=u2stream.bin.decoder_main:main"],
    },
    python_requires=">=3.8.0",
    classifiers=[
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Operating System :: POSIX :: Linux",
        "License :: OSI Approved :: Apache Software License",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
)
