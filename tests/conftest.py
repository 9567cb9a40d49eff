"""Pytest configuration for relay_client tests."""
import sys
from pathlib import Path
from types import MappingProxyType

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from relay_client.config import RelayConfig


@pytest.fixture
def relay_config():
    """Two relay nodes, one direct host, proxy served on proxy.local."""
    return RelayConfig(
        node_map=MappingProxyType({
            'hk': 'hk.relay.example.net',
            'us': 'us.relay.example.net',
        }),
        default_node='hk',
        version='77',
        direct_hosts=frozenset({'cdn.example.com'}),
        proxy_origin='https://proxy.local',
    )
