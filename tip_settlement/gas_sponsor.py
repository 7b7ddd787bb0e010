"""
Gas Sponsor

Keeps custodial wallets able to pay for their own transactions by topping them
up with native currency from the admin account.

Sequence (never parallelized with approvals, which need gas too):
1. Read account balance, return immediately if >= threshold
2. Check the admin account can cover top-up + its own transfer cost
3. Send the top-up and wait for confirmation (bounded)
4. Wait a fixed propagation delay
5. Re-read the balance

A successful call means the balance will very likely be sufficient shortly;
callers re-verify before relying on it.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .chain_client import ChainClient, account_from_key, classify_send_error
from .config import GasSponsorshipConfig, SettlementConfig
from .errors import (
    AdminFundsExhaustedError,
    InsufficientGasError,
    TransactionTimeoutError,
)


@dataclass(frozen=True)
class GasSponsorship:
    """Outcome of one ensure_gas() call"""
    sponsored: bool
    balance_before: int
    balance_after: int
    sponsor_tx_hash: Optional[str] = None


class GasSponsor:
    """
    Custodial gas top-ups from the admin account

    Args:
        chain: Shared chain client
        admin_private_key: Admin account key (never logged)
        gas_config: Sponsorship settings
        settlement_config: Confirmation timeout
    """

    def __init__(
        self,
        chain: ChainClient,
        admin_private_key: str,
        gas_config: GasSponsorshipConfig,
        settlement_config: SettlementConfig,
    ):
        self.chain = chain
        self._admin_private_key = admin_private_key
        self.admin_address = account_from_key(admin_private_key).address
        self.gas_config = gas_config
        self.confirmation_timeout = settlement_config.confirmation_timeout_seconds

        logger.info(f"Gas sponsor initialized (admin: {self.admin_address[:10]}...)")

    async def ensure_gas(
        self,
        account_address: str,
        min_threshold: int,
        top_up_amount: int,
    ) -> GasSponsorship:
        """
        Make sure account_address holds at least min_threshold wei

        Args:
            account_address: Wallet that must pay gas
            min_threshold: Minimum balance in wei
            top_up_amount: Wei to send when below threshold

        Returns:
            GasSponsorship

        Raises:
            AdminFundsExhaustedError: Admin cannot cover the top-up (fatal, not retried)
            TransactionTimeoutError: Top-up still pending after the timeout
            InsufficientGasError: Top-up transaction reverted
        """
        balance = await self.chain.get_native_balance(account_address)

        if balance >= min_threshold:
            logger.debug(f"Gas OK for {account_address[:10]}...: {balance} wei >= {min_threshold}")
            return GasSponsorship(sponsored=False, balance_before=balance, balance_after=balance)

        logger.info(
            f"Gas below threshold for {account_address[:10]}... "
            f"({balance} < {min_threshold} wei), sponsoring {top_up_amount} wei"
        )

        admin_balance = await self.chain.get_native_balance(self.admin_address)
        gas_price = await self.chain.get_gas_price()
        funding_cost = gas_price * self.gas_config.native_transfer_gas_limit

        if admin_balance < top_up_amount + funding_cost:
            logger.error(
                f"✗ Admin funds exhausted: balance {admin_balance} wei, "
                f"needs {top_up_amount + funding_cost} wei"
            )
            raise AdminFundsExhaustedError(
                details=f"admin balance {admin_balance} < {top_up_amount + funding_cost}"
            )

        try:
            sponsor_tx_hash = await self.chain.send_native(
                self._admin_private_key,
                account_address,
                top_up_amount,
                gas_limit=self.gas_config.native_transfer_gas_limit,
            )
        except Exception as e:
            error = classify_send_error(e)
            if isinstance(error, InsufficientGasError):
                # the node itself says the admin cannot pay
                raise AdminFundsExhaustedError(details=str(e))
            logger.error(f"✗ Sponsor transfer failed: {e}")
            raise error

        logger.info(f"Sponsor transfer sent: {sponsor_tx_hash}")

        try:
            receipt = await self.chain.wait_for_receipt(sponsor_tx_hash, timeout=self.confirmation_timeout)
        except Exception as e:
            logger.warning(f"⚠ Sponsor confirmation check failed for {sponsor_tx_hash}: {e}")
            receipt = None
        if receipt is None:
            raise TransactionTimeoutError(
                "Gas top-up is still pending. Please try again in a minute.",
                details=f"sponsor tx {sponsor_tx_hash} unconfirmed",
                pending_tx_hash=sponsor_tx_hash,
            )
        if not receipt.succeeded:
            raise InsufficientGasError(details=f"sponsor tx {sponsor_tx_hash} reverted")

        logger.info(f"✓ Sponsor transfer confirmed in block {receipt.block_number}")

        if self.gas_config.propagation_delay_seconds > 0:
            await asyncio.sleep(self.gas_config.propagation_delay_seconds)

        balance_after = await self.chain.get_native_balance(account_address)
        logger.info(f"Balance after sponsorship: {balance_after} wei")

        return GasSponsorship(
            sponsored=True,
            balance_before=balance,
            balance_after=balance_after,
            sponsor_tx_hash=sponsor_tx_hash,
        )


__all__ = ['GasSponsor', 'GasSponsorship']
