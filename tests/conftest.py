"""
conftest.py — Shared fixtures for mems_link tests.
"""
import sys
from pathlib import Path

import pytest

# Ensure the parent directory is on sys.path so we can import the main module
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import mems_link as ml


@pytest.fixture
def loopback() -> ml.LoopbackTransport:
    """A virtual ECU, not yet opened."""
    return ml.LoopbackTransport()


@pytest.fixture
def comm(loopback) -> ml.MemsComm:
    """MemsComm (EXTENDED generation) connected to the virtual ECU."""
    c = ml.MemsComm(loopback, ml.CommConfig())
    assert c.connect()
    yield c
    c.close()


@pytest.fixture
def basic_comm(loopback) -> ml.MemsComm:
    """MemsComm (BASIC generation) connected to the virtual ECU."""
    c = ml.MemsComm(loopback, ml.CommConfig(generation=ml.ProtocolGeneration.BASIC))
    assert c.connect()
    yield c
    c.close()
