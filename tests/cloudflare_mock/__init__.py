"""Cloudflare provider doubles for integration testing.

Usage:
    from cloudflare_mock import MockCloudflare, MockCloudflareState

    state = MockCloudflareState(
        connections={TUNNEL_ID: [{"conns": [{"origin_ip": "192.0.2.10"}]}]},
    )
    cf = MockCloudflare(state)
    await Engine(cf, document).run()

    assert cf.calls_to("batch_records")
"""

from .mail import MockMailSender
from .state import MockApiError, MockCall, MockCloudflare, MockCloudflareState

__all__ = [
    "MockApiError",
    "MockCall",
    "MockCloudflare",
    "MockCloudflareState",
    "MockMailSender",
]
