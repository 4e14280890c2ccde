"""Web3 connection to a =nil; node.

The node speaks JSON-RPC over HTTP. We reuse web3.py's :py:class:`HTTPProvider`
as the transport, but talk to it with raw ``make_request()`` calls, because
the sharded RPC methods do not map to the :py:attr:`Web3.eth` namespace.
"""

import logging

from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from web3 import HTTPProvider, Web3

from nil_proxy.utils import get_url_domain

logger = logging.getLogger(__name__)

#: Default HTTP read timeout in seconds
DEFAULT_HTTP_TIMEOUT = 30.0

#: Default number of HTTP level retries
DEFAULT_RETRIES = 3

#: Default backoff factor for retries (seconds)
DEFAULT_BACKOFF_FACTOR = 0.5


def create_rpc_session(
    retries: int = DEFAULT_RETRIES,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
) -> Session:
    """Create a requests session that retries throttled HTTP requests.

    JSON-RPC goes over POST, so we need to whitelist it explicitly.
    Only HTTP 429 and failed connects are retried, as the node has not
    processed those requests. A 5xx or a read timeout may come after the node
    accepted ``eth_sendRawTransaction``, and a resend would fail on the seqno.
    A JSON-RPC error response is a HTTP 200 and is passed through to the caller.
    """
    session = Session()
    retry_policy = Retry(
        total=retries,
        backoff_factor=backoff_factor,
        read=0,
        status_forcelist=[429],
        respect_retry_after_header=True,
        allowed_methods=Retry.DEFAULT_ALLOWED_METHODS | frozenset(["POST"]),
    )
    adapter = HTTPAdapter(max_retries=retry_policy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def create_nil_web3(
    endpoint: str,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
    retries: int = DEFAULT_RETRIES,
) -> Web3:
    """Create a Web3 instance connected to a =nil; RPC endpoint.

    Example:

    .. code-block:: python

        web3 = create_nil_web3(os.environ["NIL_RPC_ENDPOINT"])
        client = PublicClient(web3)

    :param endpoint:
        RPC URL

    :param timeout:
        HTTP read timeout in seconds

    :param retries:
        How many times we retry HTTP 429 responses and failed connects
    """
    assert endpoint.startswith("http"), f"Only HTTP(S) RPC endpoints supported, got {endpoint}"
    logger.info("Connecting to =nil; RPC at %s", get_url_domain(endpoint))
    provider = HTTPProvider(
        endpoint,
        request_kwargs={"timeout": timeout},
        session=create_rpc_session(retries=retries),
    )
    return Web3(provider)
