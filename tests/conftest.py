"""
Pytest configuration and fixtures.

This file ensures proper path setup for imports and provides small
key pairs so the suite runs quickly.
"""

import sys
import socket
from pathlib import Path

import pytest

# Add repository root to Python path
root_path = Path(__file__).parent.parent
if str(root_path) not in sys.path:
    sys.path.insert(0, str(root_path))

from enc_ledger.he_scheme import keygen  # noqa: E402
from enc_ledger.ledger import BalanceLedger  # noqa: E402

TEST_KEY_BITS = 64


@pytest.fixture(scope="session")
def keypair():
    """A toy-sized key pair shared by the whole session."""
    return keygen(TEST_KEY_BITS)


@pytest.fixture(scope="session")
def other_keypair(keypair):
    """A second, independently generated key pair."""
    pub, priv = keygen(TEST_KEY_BITS)
    while pub.n == keypair[0].n:
        pub, priv = keygen(TEST_KEY_BITS)
    return pub, priv


@pytest.fixture
def ledger(keypair):
    """A fresh, empty ledger bound to the session key pair."""
    return BalanceLedger(keypair[0])


@pytest.fixture
def free_port():
    with socket.socket() as s:
        s.bind(("localhost", 0))
        return s.getsockname()[1]
