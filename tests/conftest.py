"""
Pytest configuration and shared fixtures for edge_inference tests.
"""

import sys
from pathlib import Path

import pytest

# Ensure src and tests directories are in path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))


@pytest.fixture(autouse=True)
def clean_policy_env(monkeypatch):
    """Keep settings tests independent of the caller's environment."""
    monkeypatch.delenv("EDGE_INFERENCE_POLICY", raising=False)
    monkeypatch.delenv("EDGE_INFERENCE_LOG_LEVEL", raising=False)
    monkeypatch.delenv("EDGE_INFERENCE_MODEL_PATH", raising=False)
