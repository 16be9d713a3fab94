"""
Pytest configuration and fixtures for cluster manager tests.
"""

import os

from cryptography.fernet import Fernet


def pytest_configure(config):
    """
    Set environment variables before any test modules are imported.
    This runs very early in the pytest lifecycle.
    """
    os.environ.setdefault("CLUSTER_ENCRYPTION_KEY", Fernet.generate_key().decode())
    os.environ["CLUSTER_MANAGER_SECRET"] = "test-secret-key-for-testing"
    os.environ["CLUSTER_ENCRYPTION_SALT"] = "test-salt-sixteen-chars-long"
    os.environ.pop("CLUSTER_MANAGER_DSN", None)
