"""Shared fixtures."""
import pytest
import sh
from unittest.mock import MagicMock, patch


@pytest.fixture
def command_error():
    """Factory for the exception sh raises when a command exits with status 1."""
    def make(stderr=b""):
        return sh.ErrorReturnCode_1("command", b"", stderr)
    return make


@pytest.fixture
def fake_sh():
    """Replace the sh module seen by the system layers with a mock."""
    mock = MagicMock()
    mock.ErrorReturnCode = sh.ErrorReturnCode
    with patch('debiankit.debian.sh', mock), \
         patch('debiankit.accounts.sh', mock), \
         patch('debiankit.wordpress.sh', mock):
        yield mock
