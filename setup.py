"""Packaging information for cloudbridge."""

import sys

import setuptools

from cloudbridge.constants import VERSION

if sys.version_info[:3] < (3, 7, 0):
    print("cloudbridge requires Python 3.7 to run.")
    sys.exit(1)

install_requires = [
    "requests>=2.23.0",
    "fasteners>=0.15",
]

extras_require = {
    "dev": [
        "flake8>=3.7.9",
        "flake8-docstrings>=1.5.0",
        "flake8-import-order>=0.18.1",
        "black>=19.10b0",
        "mypy>=0.770",
        "pytest>=5.4.1",
        "pytest-cov>=2.8.1",
    ]
}


def _long_description():
    with open("README.md") as f:
        return f.read()


setuptools.setup(
    name="cloudbridge",
    version=VERSION,
    description="Mount an eventually consistent cloud storage namespace as a file system.",
    long_description=_long_description(),
    long_description_content_type="text/markdown",
    license="Apache",
    packages=setuptools.find_packages(),
    install_requires=install_requires,
    extras_require=extras_require,
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.7",
        "Intended Audience :: Information Technology",
        "License :: OSI Approved :: Apache Software License",
        "Topic :: System :: Filesystems",
    ],
    python_requires=">=3.7",
)
