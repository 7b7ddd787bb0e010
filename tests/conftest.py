"""
Shared fixtures for tip settlement tests

- FakeChainClient: in-memory stand-in for ChainClient (balances, allowances,
  receipts), with switches for reverts, timeouts and send errors
- Temporary SQLite ledger
- TipConfig with zero propagation delay and short confirmation timeouts
"""

import itertools
from decimal import Decimal
from typing import Dict, List, Optional, Set

import pytest
from eth_account import Account as EthAccount

from tip_settlement.chain_client import TxReceipt
from tip_settlement.config import ChainConfig, GasSponsorshipConfig, SettlementConfig, StorageConfig, TipConfig
from tip_settlement.explorer import address_url, tx_url
from tip_settlement.ledger_db import LedgerDatabase


ADMIN_KEY = "0x" + "11" * 32
SENDER_KEY = "0x" + "22" * 32
RECIPIENT_KEY = "0x" + "33" * 32

ADMIN_ADDRESS = EthAccount.from_key(ADMIN_KEY).address.lower()
SENDER_ADDRESS = EthAccount.from_key(SENDER_KEY).address.lower()
RECIPIENT_ADDRESS = EthAccount.from_key(RECIPIENT_KEY).address.lower()

TOKEN_ADDRESS = "0x" + "ab" * 20
PAYMASTER_ADDRESS = "0xf77de6d2ad0e954af262bb5798002dd5582376cd"

ETH = 10 ** 18
TOKEN = 10 ** 18
GWEI = 10 ** 9


def tokens(amount) -> int:
    return int(Decimal(str(amount)) * TOKEN)


def eth(amount) -> int:
    return int(Decimal(str(amount)) * ETH)


class FakeChainClient:
    """
    In-memory chain with the ChainClient interface

    Switches:
        timeout_kinds: tx kinds ('native', 'approve', 'transfer') whose receipt never arrives
        revert_kinds: tx kinds confirmed with status 0
        send_errors: tx kind -> exception raised at submission
        receipt_errors: tx kind -> exception raised while waiting for the receipt
        estimate_error: exception raised by estimate_paymaster_transfer_gas
        onchain_fee_percent: percentage used by get_onchain_fee (None = read fails)
    """

    def __init__(self, config: ChainConfig, token_decimals: int = 18):
        self.config = config
        self.token_decimals = token_decimals
        self.chain_id = 11155111
        self.paymaster_address = PAYMASTER_ADDRESS

        self.native: Dict[str, int] = {}
        self.token: Dict[str, int] = {}
        self.allowances: Dict[str, int] = {}
        self.gas_price = GWEI
        self.gas_estimate = 65000
        self.collected_fees = 0

        self.timeout_kinds: Set[str] = set()
        self.revert_kinds: Set[str] = set()
        self.send_errors: Dict[str, Exception] = {}
        self.receipt_errors: Dict[str, Exception] = {}
        self.estimate_error: Optional[Exception] = None
        self.onchain_fee_percent: Optional[int] = None
        # native top-ups that are confirmed but not credited (slow propagation)
        self.drop_native_credit = False

        self.sent: List[tuple] = []
        self._kinds: Dict[str, str] = {}
        self._counter = itertools.count(1)
        self._block = itertools.count(100)
        self.closed = False

    # helpers

    def fund(self, address: str, native: int = 0, token: int = 0):
        address = address.lower()
        self.native[address] = self.native.get(address, 0) + native
        self.token[address] = self.token.get(address, 0) + token

    def sent_of(self, kind: str) -> List[tuple]:
        return [entry for entry in self.sent if entry[0] == kind]

    def _new_hash(self, kind: str) -> str:
        tx_hash = "0x" + format(next(self._counter), '064x')
        self._kinds[tx_hash] = kind
        return tx_hash

    def _submit(self, kind: str) -> str:
        if kind in self.send_errors:
            raise self.send_errors[kind]
        return self._new_hash(kind)

    # reads

    async def get_native_balance(self, address: str) -> int:
        return self.native.get(address.lower(), 0)

    async def get_token_balance(self, address: str) -> int:
        return self.token.get(address.lower(), 0)

    async def get_allowance(self, owner: str) -> int:
        return self.allowances.get(owner.lower(), 0)

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def estimate_paymaster_transfer_gas(self, sender: str, recipient: str, amount: int) -> int:
        if self.estimate_error is not None:
            raise self.estimate_error
        return self.gas_estimate

    async def get_onchain_fee(self, amount: int) -> Optional[int]:
        if self.onchain_fee_percent is None:
            return None
        return amount * self.onchain_fee_percent // 100

    async def get_collected_fees(self) -> int:
        return self.collected_fees

    # writes

    async def send_native(self, private_key: str, to_address: str, amount_wei: int, gas_limit: int = 21000) -> str:
        sender = EthAccount.from_key(private_key).address.lower()
        tx_hash = self._submit('native')
        self.sent.append(('native', sender, to_address.lower(), amount_wei, tx_hash))
        if 'native' not in self.revert_kinds and 'native' not in self.timeout_kinds:
            self.native[sender] = self.native.get(sender, 0) - amount_wei
            if not self.drop_native_credit:
                self.native[to_address.lower()] = self.native.get(to_address.lower(), 0) + amount_wei
        return tx_hash

    async def approve_paymaster(self, private_key: str, amount: int, gas_limit: int) -> str:
        owner = EthAccount.from_key(private_key).address.lower()
        tx_hash = self._submit('approve')
        self.sent.append(('approve', owner, amount, tx_hash))
        if 'approve' not in self.revert_kinds and 'approve' not in self.timeout_kinds:
            self.allowances[owner] = amount
        return tx_hash

    async def submit_paymaster_transfer(self, private_key: str, recipient: str, amount: int, gas_limit: int) -> str:
        sender = EthAccount.from_key(private_key).address.lower()
        if 'transfer' not in self.send_errors and self.native.get(sender, 0) < gas_limit * self.gas_price:
            # nodes reject against the full gas limit, not gas actually used
            raise ValueError("insufficient funds for gas * price + value")
        tx_hash = self._submit('transfer')
        self.sent.append(('transfer', sender, recipient.lower(), amount, gas_limit, tx_hash))
        if 'transfer' not in self.revert_kinds and 'transfer' not in self.timeout_kinds:
            fee = amount * (self.onchain_fee_percent or 0) // 100
            self.token[sender] = self.token.get(sender, 0) - amount
            self.token[recipient.lower()] = self.token.get(recipient.lower(), 0) + amount - fee
            self.allowances[sender] = self.allowances.get(sender, 0) - amount
            self.collected_fees += fee
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float = 60.0) -> Optional[TxReceipt]:
        kind = self._kinds.get(tx_hash)
        if kind in self.receipt_errors:
            raise self.receipt_errors[kind]
        if kind in self.timeout_kinds:
            return None
        status = 0 if kind in self.revert_kinds else 1
        return TxReceipt(tx_hash=tx_hash, status=status, block_number=next(self._block), gas_used=21000)

    # links / lifecycle

    def tx_url(self, tx_hash: str) -> str:
        return tx_url(self.config.explorer_host, tx_hash)

    def address_url(self, address: str) -> str:
        return address_url(self.config.explorer_host, address)

    async def close(self):
        self.closed = True


class SenderAccount:
    """Minimal sender for engine-level tests"""

    def __init__(self, owner_reference="100", display_name="sender", wallet_address=SENDER_ADDRESS,
                 signing_key=SENDER_KEY):
        self.owner_reference = owner_reference
        self.display_name = display_name
        self.wallet_address = wallet_address
        self.signing_key = signing_key


@pytest.fixture
def tip_config(tmp_path):
    return TipConfig(
        chain=ChainConfig(
            rpc_url="http://localhost:8545",
            token_address=TOKEN_ADDRESS,
            paymaster_address=PAYMASTER_ADDRESS,
            admin_private_key=ADMIN_KEY,
        ),
        gas=GasSponsorshipConfig(propagation_delay_seconds=0),
        settlement=SettlementConfig(confirmation_timeout_seconds=0.05, poll_interval_seconds=0.01),
        storage=StorageConfig(db_path=str(tmp_path / "ledger.db")),
    )


@pytest.fixture
def chain(tip_config):
    client = FakeChainClient(tip_config.chain)
    client.fund(ADMIN_ADDRESS, native=eth(10))
    return client


@pytest.fixture
def db(tip_config):
    database = LedgerDatabase(tip_config.storage.db_path)
    yield database
    database.close()


@pytest.fixture
def sender():
    return SenderAccount()
