import os

import pytest

from stackcheck.descriptor.redaction import secret_values

TEST_AWS_ACCESS_KEY_ID = "test"
TEST_AWS_SECRET_ACCESS_KEY = "test"
TEST_AWS_REGION_NAME = "us-east-1"

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")


@pytest.fixture(autouse=True)
def set_boto_test_credentials_and_region(monkeypatch):
    """
    Automatically sets the default credentials and region for all unit tests.
    """
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", TEST_AWS_ACCESS_KEY_ID)
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", TEST_AWS_SECRET_ACCESS_KEY)
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_AWS_REGION_NAME)


@pytest.fixture(autouse=True)
def clear_secret_values():
    """Secret values are registered process wide, make sure no test sees the secrets of another one."""
    secret_values.clear()
    yield
    secret_values.clear()


@pytest.fixture
def wordpress_template_path() -> str:
    return os.path.join(TEMPLATES_DIR, "wordpress.yaml")


@pytest.fixture
def wordpress_template(wordpress_template_path) -> str:
    with open(wordpress_template_path, "r") as fd:
        return fd.read()


@pytest.fixture
def wordpress_parameters() -> dict[str, str]:
    return {
        "VPCStackName": "network",
        "KeyName": "deployer",
        "DBUsername": "wpadmin",
        "DBPassword": "s3cr3t-passw0rd",
    }
