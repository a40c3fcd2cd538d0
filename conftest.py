"""Shared pytest fixtures for DinElportal packages."""

import pytest
from unittest.mock import MagicMock, patch


@pytest.fixture
def mock_httpx_client():
    """Mock httpx.Client as used by the beacon dispatcher."""
    with patch("dinelportal.tracking.dispatch.httpx.Client") as mock:
        client = MagicMock()
        mock.return_value = client
        yield client


@pytest.fixture
def sample_landing_urls():
    """Landing URLs as partners receive them from the marketplace."""
    return [
        "https://shop.partner.dk/?click_id=dep_1736937000_abc123&partner_id=acme",
        "https://www.partner.dk/tilbud?utm_source=dinelportal&click_id=dep_1736937001_def456",
        "https://partner.dk/?pid=acme",
    ]
