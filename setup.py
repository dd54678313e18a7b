"""Setup configuration for saanify-ops."""

import os
import re

from setuptools import find_packages, setup

here = os.path.abspath(os.path.dirname(__file__))

# Get version and author from package without importing it
with open(os.path.join(here, "saanify_ops", "__init__.py"), encoding="utf-8") as f:
    package_init = f.read()
__version__ = re.search(r'^__version__ = "([^"]+)"', package_init, re.M).group(1)
__author__ = re.search(r'^__author__ = "([^"]+)"', package_init, re.M).group(1)

# Get the long description from the README file
with open(os.path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="saanify-ops",
    version=__version__,
    description="Deployment, backup and recovery automation for Saanify",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author=__author__,
    keywords="deployment backup recovery automation cli",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"saanify_ops": ["templates/*.j2"]},
    python_requires=">=3.8",
    install_requires=[
        "click>=8.0.0",
        "pyyaml>=6.0",
        "gitpython>=3.1.0",
        "jinja2>=3.0.0",
        "cryptography>=3.4.0",
        "jsonschema>=4.0.0",
        "requests>=2.28.0",
        "sqlalchemy>=2.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.12.0",
            "mypy>=0.991",
        ],
    },
    entry_points={
        "console_scripts": [
            "saanify-ops=saanify_ops.cli:cli",
        ],
    },
)
