"""
Chain Client - On-Chain Access Layer

One process-scoped connection (AsyncWeb3 provider + token and paymaster
bindings) created at startup by ChainClient.connect() and injected into the gas
sponsor and settlement engine. It holds no per-request state.

Design:
- Embedded minimal ABI, only the functions we call
- Every RPC call is awaited on the AsyncWeb3 provider
- Explicit nonce ('pending'), legacy gasPrice, fixed gas limits from config
- Confirmation is a bounded deadline loop over eth_getTransactionReceipt that
  returns None on expiry instead of raising
  (RPC errors during a poll are logged and the loop keeps going)
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from aiohttp import ClientTimeout
from eth_account import Account
from loguru import logger
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TransactionNotFound

from .config import ChainConfig, TipConfig
from .errors import (
    ChainUnavailableError,
    ContractRevertedError,
    InsufficientGasError,
    TipError,
    TransferFailedError,
)
from .explorer import address_url, tx_url


# ============================================================
# MINIMAL ABI
# ============================================================

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]

# Fee-collecting intermediary: pulls the full amount, keeps the fee, forwards the rest
PAYMASTER_ABI = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transferRLUSD",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "amount", "type": "uint256"}],
        "name": "calculateFee",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getCollectedFees",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass(frozen=True)
class TxReceipt:
    """Confirmed transaction receipt"""
    tx_hash: str
    status: int
    block_number: int
    gas_used: int
    effective_gas_price: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def to_checksum(address: str) -> str:
    return AsyncWeb3.to_checksum_address(address)


def account_from_key(private_key: str):
    """eth_account LocalAccount for a hex private key (raises ValueError if malformed)"""
    return Account.from_key(private_key)


def generate_account():
    """Fresh random key pair"""
    return Account.create()


def classify_send_error(error: Exception, pending_tx_hash: Optional[str] = None) -> TipError:
    """
    Map a library exception raised while submitting a transaction to a TipError

    Args:
        error: Exception from web3 / the node
        pending_tx_hash: Hash if the transaction was already broadcast

    Returns:
        TipError with a user-safe message; raw text kept in details
    """
    if isinstance(error, TipError):
        return error

    text = str(error)
    lowered = text.lower()

    if isinstance(error, ContractLogicError) or "execution reverted" in lowered:
        return ContractRevertedError(details=text, pending_tx_hash=pending_tx_hash)
    if "insufficient funds" in lowered:
        return InsufficientGasError(details=text, pending_tx_hash=pending_tx_hash)
    if "nonce" in lowered:
        return TransferFailedError(
            "Another transaction from this wallet is in flight. Please retry in a moment.",
            details=text,
            pending_tx_hash=pending_tx_hash,
        )
    if isinstance(error, (ConnectionError, asyncio.TimeoutError, OSError)):
        return ChainUnavailableError(details=text, pending_tx_hash=pending_tx_hash)
    return TransferFailedError(details=text, pending_tx_hash=pending_tx_hash)


class ChainClient:
    """
    Shared chain connection

    Usage:
        client = await ChainClient.connect(config)
        balance = await client.get_token_balance(address)
        tx_hash = await client.submit_paymaster_transfer(key, recipient, amount)
        receipt = await client.wait_for_receipt(tx_hash)
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        token_contract: Any,
        paymaster_contract: Any,
        token_decimals: int,
        chain_id: int,
        config: ChainConfig,
        poll_interval_seconds: float = 2.0,
    ):
        self.w3 = w3
        self.token_contract = token_contract
        self.paymaster_contract = paymaster_contract
        self.token_decimals = token_decimals
        self.chain_id = chain_id
        self.config = config
        self.poll_interval_seconds = poll_interval_seconds
        self.paymaster_address = paymaster_contract.address

    @classmethod
    async def connect(cls, config: TipConfig) -> 'ChainClient':
        """
        Create the process-wide client

        Args:
            config: Full tip configuration

        Returns:
            Connected ChainClient

        Raises:
            ChainUnavailableError: If the RPC endpoint cannot be reached
        """
        chain_config = config.chain
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            chain_config.rpc_url,
            request_kwargs={"timeout": ClientTimeout(total=chain_config.request_timeout_seconds)},
        ))

        try:
            if not await w3.is_connected():
                raise ChainUnavailableError(details=f"cannot reach RPC {chain_config.rpc_url}")

            chain_id = await w3.eth.chain_id
            token_contract = w3.eth.contract(address=to_checksum(chain_config.token_address), abi=ERC20_ABI)
            paymaster_contract = w3.eth.contract(
                address=to_checksum(chain_config.paymaster_address),
                abi=PAYMASTER_ABI,
            )
            token_decimals = await token_contract.functions.decimals().call()
        except TipError:
            raise
        except Exception as e:
            logger.error(f"✗ Chain connection failed: {e}")
            raise ChainUnavailableError(details=str(e))

        logger.info(
            f"✓ Chain client connected: chain_id={chain_id} | "
            f"token={chain_config.token_address[:10]}... ({token_decimals} decimals) | "
            f"paymaster={chain_config.paymaster_address[:10]}..."
        )

        return cls(
            w3=w3,
            token_contract=token_contract,
            paymaster_contract=paymaster_contract,
            token_decimals=int(token_decimals),
            chain_id=int(chain_id),
            config=chain_config,
            poll_interval_seconds=config.settlement.poll_interval_seconds,
        )

    # ============================================================
    # READS
    # ============================================================

    async def get_native_balance(self, address: str) -> int:
        return await self.w3.eth.get_balance(to_checksum(address))

    async def get_token_balance(self, address: str) -> int:
        return await self.token_contract.functions.balanceOf(to_checksum(address)).call()

    async def get_allowance(self, owner: str) -> int:
        """Allowance granted by owner to the paymaster"""
        return await self.token_contract.functions.allowance(
            to_checksum(owner),
            self.paymaster_address,
        ).call()

    async def get_gas_price(self) -> int:
        return await self.w3.eth.gas_price

    async def estimate_paymaster_transfer_gas(self, sender: str, recipient: str, amount: int) -> int:
        """Gas units for transferRLUSD (raises if the node cannot estimate)"""
        return await self.paymaster_contract.functions.transferRLUSD(
            to_checksum(recipient),
            amount,
        ).estimate_gas({"from": to_checksum(sender)})

    async def get_onchain_fee(self, amount: int) -> Optional[int]:
        """Fee the paymaster will deduct, None if the read fails"""
        try:
            return await self.paymaster_contract.functions.calculateFee(amount).call()
        except Exception as e:
            logger.debug(f"calculateFee read failed: {e}")
            return None

    async def get_collected_fees(self) -> int:
        return await self.paymaster_contract.functions.getCollectedFees().call()

    # ============================================================
    # WRITES
    # ============================================================

    async def _base_tx(self, sender: str, gas_limit: int) -> dict:
        nonce = await self.w3.eth.get_transaction_count(sender, 'pending')
        gas_price = await self.w3.eth.gas_price
        return {
            "from": sender,
            "nonce": nonce,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "chainId": self.chain_id,
        }

    async def _sign_and_send(self, account, tx: dict) -> str:
        signed = account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return AsyncWeb3.to_hex(tx_hash)

    async def send_native(self, private_key: str, to_address: str, amount_wei: int, gas_limit: int = 21000) -> str:
        """Plain value transfer, returns the tx hash"""
        account = account_from_key(private_key)
        tx = await self._base_tx(account.address, gas_limit)
        tx.update({"to": to_checksum(to_address), "value": amount_wei})
        tx_hash = await self._sign_and_send(account, tx)
        logger.debug(f"Native transfer sent: {tx_hash} ({amount_wei} wei to {to_address[:10]}...)")
        return tx_hash

    async def approve_paymaster(self, private_key: str, amount: int, gas_limit: int) -> str:
        account = account_from_key(private_key)
        base = await self._base_tx(account.address, gas_limit)
        tx = await self.token_contract.functions.approve(self.paymaster_address, amount).build_transaction(base)
        tx_hash = await self._sign_and_send(account, tx)
        logger.debug(f"Approval sent: {tx_hash}")
        return tx_hash

    async def submit_paymaster_transfer(self, private_key: str, recipient: str, amount: int, gas_limit: int) -> str:
        account = account_from_key(private_key)
        base = await self._base_tx(account.address, gas_limit)
        tx = await self.paymaster_contract.functions.transferRLUSD(
            to_checksum(recipient),
            amount,
        ).build_transaction(base)
        tx_hash = await self._sign_and_send(account, tx)
        logger.debug(f"Paymaster transfer sent: {tx_hash}")
        return tx_hash

    # ============================================================
    # CONFIRMATION
    # ============================================================

    async def wait_for_receipt(self, tx_hash: str, timeout: float = 60.0) -> Optional[TxReceipt]:
        """
        Poll for a receipt until the deadline

        Args:
            tx_hash: Transaction hash
            timeout: Seconds to wait

        Returns:
            TxReceipt, or None when the deadline passed with the tx still pending.
            None is not a failure signal for the transaction itself.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                receipt = None
            except Exception as e:
                logger.warning(f"⚠ Receipt poll for {tx_hash} failed, retrying: {e}")
                receipt = None

            if receipt is not None:
                return TxReceipt(
                    tx_hash=tx_hash,
                    status=int(receipt["status"]),
                    block_number=int(receipt["blockNumber"]),
                    gas_used=int(receipt["gasUsed"]),
                    effective_gas_price=int(receipt.get("effectiveGasPrice", 0) or 0),
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"⚠ Receipt wait expired after {timeout:.0f}s for {tx_hash}")
                return None
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    # ============================================================
    # LINKS / LIFECYCLE
    # ============================================================

    def tx_url(self, tx_hash: str) -> str:
        return tx_url(self.config.explorer_host, tx_hash)

    def address_url(self, address: str) -> str:
        return address_url(self.config.explorer_host, address)

    async def close(self):
        """Release the provider session"""
        provider = self.w3.provider
        disconnect = getattr(provider, 'disconnect', None)
        if disconnect is None:
            return
        try:
            await disconnect()
            logger.debug("✓ Chain provider disconnected")
        except Exception as e:
            logger.debug(f"Error closing chain provider: {e}")
