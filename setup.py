import os

from setuptools import find_packages, setup


# read the version from the VERSION file
def get_version():
    with open(os.path.join(os.path.dirname(__file__), "VERSION"), "r") as version_file:
        return version_file.read().strip()


# Set the version in the stackcheck/version.py file
def set_version_constant(version: str):
    with open(
        os.path.join(os.path.dirname(__file__), "stackcheck-core", "stackcheck", "version.py"), "w"
    ) as version_file:
        version_file.write(f'__version__ = "{version}"\n')


set_version_constant(get_version())

setup(
    name="stackcheck",
    version=get_version(),
    description="Loader, validator and orchestrator client for CloudFormation deployment descriptors",
    python_requires=">=3.10",
    package_dir={"": "stackcheck-core"},
    packages=find_packages(where="stackcheck-core", exclude=["tests", "tests.*"]),
    install_requires=[
        "boto3>=1.26",
        "botocore>=1.29",
        "click>=8.1",
        "python-dotenv>=1.0",
        "PyYAML>=6.0",
        "rich>=13.0",
    ],
    extras_require={
        "test": [
            "moto[cloudformation,sns]>=5.0",
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "stackcheck=stackcheck.cli.main:main",
        ],
    },
)
