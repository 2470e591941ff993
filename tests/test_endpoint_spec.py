import pytest
import yaml

from xraytunnel.core.errors import TunnelSetupError
from xraytunnel.engine.base import build_endpoint_spec, parse_endpoint_spec


def test_build_endpoint_spec():
    spec = build_endpoint_spec("127.0.0.1", 1080)
    assert yaml.safe_load(spec) == {"endpoint": "127.0.0.1:1080"}
    assert parse_endpoint_spec(spec) == ("127.0.0.1", 1080)


def test_parse_ipv6_endpoint():
    assert parse_endpoint_spec("endpoint: '[::1]:2080'\n") == ("::1", 2080)


@pytest.mark.parametrize("spec", [
    "endpoint: [unclosed",
    "- 1\n- 2\n",
    "endpoint: localhost\n",
    "endpoint: '127.0.0.1:http'\n",
    "endpoint: '127.0.0.1:0'\n",
    "other: value\n",
])
def test_parse_invalid_specs(spec):
    with pytest.raises(TunnelSetupError):
        parse_endpoint_spec(spec)
