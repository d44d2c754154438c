"""Pytest configuration and shared fixtures."""

import random

import httpx
import pytest

from modgate.gateway.orchestrator import ModGateway
from modgate.mock_servers import create_mock_app
from modgate.models.config import GatewayConfig
from tests.fixtures.sample_data import MOCK_BASE_URL, VALID_KEY


@pytest.fixture(scope="session")
def deterministic_seed():
    """Set a fixed random seed for deterministic test results."""
    random.seed(42)
    return 42


@pytest.fixture
def mock_app():
    """Mock CurseForge API that requires VALID_KEY."""
    return create_mock_app(api_key=VALID_KEY, random_seed=42)


@pytest.fixture
def gateway_config():
    """Gateway settings pointed at the mock, logging off."""
    return GatewayConfig(
        api_key=VALID_KEY,
        base_url=MOCK_BASE_URL,
        structured_logging=False,
        warm_targets=[],
    )


@pytest.fixture
def make_gateway(mock_app, gateway_config):
    """Factory for gateways talking to ``mock_app`` in-process.

    Keyword arguments that are config fields override the config; the rest
    go to ModGateway (clocks, sleeper, persistence).
    """
    def factory(**kwargs) -> ModGateway:
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k in GatewayConfig.model_fields}
        config = gateway_config.model_copy(update=fields) if fields else gateway_config
        return ModGateway(
            config,
            transport=httpx.ASGITransport(app=mock_app),
            **kwargs,
        )

    return factory
