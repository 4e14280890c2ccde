"""HTTP transport settings."""

from nil_proxy.provider import create_nil_web3, create_rpc_session


def test_only_throttled_requests_are_retried():
    """A 5xx may come after the node accepted a message, so it is not resent."""
    session = create_rpc_session(retries=5)
    retry = session.get_adapter("https://example.com").max_retries

    assert retry.total == 5
    assert retry.read == 0
    assert retry.is_retry("POST", 429)
    assert not retry.is_retry("POST", 502)
    assert not retry.is_retry("POST", 500)


def test_create_nil_web3_endpoint():
    web3 = create_nil_web3("http://localhost:8529", timeout=3)
    assert web3.provider.endpoint_uri == "http://localhost:8529"
