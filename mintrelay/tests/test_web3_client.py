"""Tests for the web3 chain client's error mapping (transport mocked)."""

from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from eth_account import Account
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3RPCError

from mintrelay.core.errors import ChainUnavailableError, NonceIntegrityError, SimulationRevertedError
from mintrelay.features.chain import abis
from mintrelay.features.chain.client import ContractCall
from mintrelay.features.chain.web3_client import Web3ChainClient
from mintrelay.tests.mocks import ALICE, MANAGER

KEY = "0x" + "4c" * 32


@pytest.fixture
def web3_client():
    return Web3ChainClient("http://localhost:8545", 84532, [KEY, ""])


def _call(function="subscribeToFreePlanForUser"):
    return ContractCall(MANAGER, abis.SUBSCRIPTION_MANAGER_ABI, function, (ALICE,))


def _stub_function(client, *, call_result=None, call_error=None):
    fn = MagicMock()
    fn.call = AsyncMock(return_value=call_result, side_effect=call_error)
    fn.build_transaction = AsyncMock(return_value={
        "to": MANAGER,
        "gas": 100_000,
        "gasPrice": 1_000_000_000,
        "nonce": 4,
        "chainId": 84532,
        "value": 0,
        "data": "0x",
    })
    client._function = lambda call: fn
    return fn


def test_relayer_address_derived_from_key(web3_client):
    assert web3_client.relayer_addresses == [Account.from_key(KEY).address]


@pytest.mark.asyncio
async def test_transport_errors_map_to_chain_unavailable(web3_client):
    web3_client.w3.eth.get_code = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))
    with pytest.raises(ChainUnavailableError):
        await web3_client.get_code(MANAGER)


@pytest.mark.asyncio
async def test_pending_receipt_is_none(web3_client):
    web3_client.w3.eth.get_transaction_receipt = AsyncMock(side_effect=TransactionNotFound("pending"))
    assert await web3_client.get_receipt("0x" + "00" * 32) is None


@pytest.mark.asyncio
async def test_receipt_is_wrapped(web3_client):
    web3_client.w3.eth.get_transaction_receipt = AsyncMock(return_value={"status": 1, "blockNumber": 12, "gasUsed": 50_000})
    receipt = await web3_client.get_receipt("0x" + "01" * 32)
    assert receipt.succeeded
    assert receipt.block_number == 12


@pytest.mark.asyncio
async def test_simulation_revert_reason_is_extracted(web3_client):
    _stub_function(web3_client, call_error=ContractLogicError("execution reverted: Monthly quota reached"))
    with pytest.raises(SimulationRevertedError) as exc_info:
        await web3_client.simulate(_call(), web3_client.relayer_addresses[0])
    assert exc_info.value.reason == "Monthly quota reached"


@pytest.mark.asyncio
async def test_nonce_rejection_maps_to_integrity_error(web3_client):
    _stub_function(web3_client)
    web3_client.w3.eth.send_raw_transaction = AsyncMock(side_effect=Web3RPCError("nonce too low"))
    with pytest.raises(NonceIntegrityError):
        await web3_client.send_transaction(_call(), web3_client.relayer_addresses[0], 4)


@pytest.mark.asyncio
async def test_broadcast_returns_hex_hash(web3_client):
    _stub_function(web3_client)
    web3_client.w3.eth.send_raw_transaction = AsyncMock(return_value=bytes.fromhex("ab" * 32))
    tx_hash = await web3_client.send_transaction(_call(), web3_client.relayer_addresses[0], 4)
    assert tx_hash == "0x" + "ab" * 32
