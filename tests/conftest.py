"""Shared fixtures for the collector tests."""

import pytest

from fakes import Connector, FakeService


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def connect(service):
    return Connector(service)
