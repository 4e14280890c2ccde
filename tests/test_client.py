"""Receipt polling and RPC error handling."""

import pytest
from web3 import Web3

from nil_proxy.client import PublicClient, RPCError, TransactionFailed, flatten_receipts, is_receipt_tree_complete
from nil_proxy.faucet import FaucetClient
from nil_proxy.smart_account import SmartAccount, generate_random_private_key
from nil_proxy.testing import TEST_FAUCET_ADDRESS, NilTestProvider


def test_receipt_tree_complete():
    """Missing outgoing receipts keep the tree incomplete."""
    leaf = {"success": True, "outReceipts": []}
    assert is_receipt_tree_complete({"success": True, "outReceipts": [leaf]})
    assert not is_receipt_tree_complete({"success": True, "outReceipts": [leaf, None]})
    assert not is_receipt_tree_complete(None)
    assert len(flatten_receipts({"success": True, "outReceipts": [{"success": True, "outReceipts": [leaf]}]})) == 3


def test_wait_till_completed_polls():
    """Keep polling while the outgoing messages are in flight."""
    provider = NilTestProvider(receipt_delay_polls=2)
    client = PublicClient(Web3(provider))

    polls = []
    original_get_receipt = client.get_receipt

    def counting_get_receipt(tx_hash):
        receipt = original_get_receipt(tx_hash)
        polls.append(receipt)
        return receipt

    client.get_receipt = counting_get_receipt

    tx_hash = FaucetClient(client).top_up("0x0001000000000000000000000000000000000001", 1000, TEST_FAUCET_ADDRESS)
    receipts = client.wait_till_completed(tx_hash, timeout=5, poll_interval=0)

    assert len(polls) == 3
    assert polls[0]["outReceipts"] == [None]
    assert len(receipts) == 2
    assert all(r["success"] for r in receipts)
    assert client.get_balance("0x0001000000000000000000000000000000000001") == 1000


def test_wait_till_completed_timeout():
    """A transaction that never completes raises TimeoutError."""
    provider = NilTestProvider(hold_receipts=True)
    client = PublicClient(Web3(provider))
    tx_hash = FaucetClient(client).top_up("0x0001000000000000000000000000000000000001", 1000, TEST_FAUCET_ADDRESS)

    with pytest.raises(TimeoutError):
        client.wait_till_completed(tx_hash, timeout=0.05, poll_interval=0.01)


def test_wait_till_completed_failure(client, artifacts):
    """Self deploy of an unfunded account fails."""
    account = SmartAccount(client, generate_random_private_key(), salt=1, code=artifacts.smart_account)

    with pytest.raises(TransactionFailed, match="Insufficient balance") as exc_info:
        account.self_deploy(timeout=5, poll_interval=0)

    assert exc_info.value.receipts[0]["success"] is False
    assert not account.check_deployment_status()


def test_rpc_error(provider, client):
    """JSON-RPC error objects become RPCError."""
    provider.fail_method("eth_getCode", "node is syncing", code=-32001)

    with pytest.raises(RPCError) as exc_info:
        client.get_code("0x0001000000000000000000000000000000000001")

    assert exc_info.value.code == -32001
    assert exc_info.value.method == "eth_getCode"
    assert "node is syncing" in str(exc_info.value)


def test_unknown_faucet(client):
    """Faucet refuses top ups from unknown faucet contracts."""
    with pytest.raises(RPCError, match="Unknown faucet"):
        FaucetClient(client).top_up("0x0001000000000000000000000000000000000001", 1000, "0x0001000000000000000000000000000000000002")


def test_chain_queries(client):
    assert client.get_chain_id() == 0
    assert client.get_seqno("0x0001000000000000000000000000000000000001") == 0
    assert client.get_code("0x0001000000000000000000000000000000000001") == b""
