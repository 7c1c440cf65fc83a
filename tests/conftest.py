"""
Pytest configuration and fixtures for looking glass tests.

This module provides reusable fixtures: an API test client with a fresh chunk
endpoint, hop aggregators with a recording enricher, and sample probe output.
"""
import pytest
import sys
import os
from unittest.mock import patch

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from lookingglass.probe.hops import HopAggregator
from lookingglass.speedtest.cache import ChunkCache
from lookingglass.speedtest.endpoint import TransferEndpoint


class RecordingEnricher:
    """Enricher stand-in that remembers which hosts were submitted."""

    def __init__(self):
        self.submitted = []

    def submit(self, record):
        self.submitted.append((record.hop, record.host))


@pytest.fixture
def enricher():
    """Recording enricher; nothing is looked up."""
    return RecordingEnricher()


@pytest.fixture
def aggregator(enricher):
    """
    Create a hop aggregator wired to the recording enricher.

    Returns:
        HopAggregator: Aggregator with window 100 and loss batch 10
    """
    return HopAggregator(enricher=enricher, window_size=100, loss_batch=10)


@pytest.fixture
def sample_mtr_output():
    """Raw live MTR output for a three hop path, one round."""
    return (
        "h 0 192.168.1.1\n"
        "x 0 1\n"
        "p 0 1.25 1\n"
        "h 1 100.64.0.1\n"
        "x 1 2\n"
        "p 1 8.5 2\n"
        "h 2 8.8.8.8\n"
        "x 2 3\n"
        "p 2 14.75 3\n"
    )


@pytest.fixture
def transfer_endpoint():
    """Fresh pattern endpoint with default 4 MiB chunks and an empty cache."""
    return TransferEndpoint(
        chunk_size=4 * 1024 * 1024,
        cache=ChunkCache(capacity=32),
        generator="pattern",
        request_timeout=30.0,
    )


@pytest.fixture
def api_client(transfer_endpoint):
    """
    Create a test client for API endpoint testing.

    The module-level chunk endpoint is swapped for a fresh one so cache and
    in-flight state never leak between tests.

    Returns:
        TestClient: FastAPI test client
    """
    from fastapi.testclient import TestClient
    from lookingglass import main

    with patch.object(main, "transfer_endpoint", transfer_endpoint):
        yield TestClient(main.app)
