"""
Settlement Engine

Moves a tip from a custodial wallet to a recipient through the fee-collecting
paymaster contract:
1. Amount normalization
2. Fee quote (minimum amount check)
3. Gas check, sponsored from the admin account when low
4. Token balance check (before the sender spends any gas)
5. Paymaster allowance, standing approval when short
6. Transfer gas estimate, one more sponsorship with the larger top-up if needed
7. transferRLUSD for the full requested amount, bounded confirmation wait
8. Structured outcome

Every comparison runs in integer base units. Failures are raised as TipError
subclasses inside settle() and returned as a failed Result; nothing raises
through settle() except task cancellation.

A TRANSACTION_TIMEOUT result is not a statement about the transaction itself:
it carries pending_tx_hash and the caller must check the explorer before
trying again. The engine never resubmits.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from loguru import logger

from .amounts import TokenAmount, canonical_string, format_units, normalize_amount, parse_units
from .chain_client import ChainClient, classify_send_error
from .config import GasSponsorshipConfig, SettlementConfig
from .errors import (
    AmountBelowMinimumError,
    ApprovalFailedError,
    ChainUnavailableError,
    ContractRevertedError,
    InsufficientGasError,
    InsufficientTokenBalanceError,
    Result,
    TipError,
    TransactionTimeoutError,
)
from .fee_calculator import FeeQuote, compute_fee
from .gas_sponsor import GasSponsor, GasSponsorship


NATIVE_DECIMALS = 18


@dataclass
class SettlementOutcome:
    """Confirmed paymaster transfer"""
    transaction_hash: str
    block_number: int
    gas_used: int
    sender_address: str
    recipient_address: str
    requested_amount: Decimal
    requested_base_units: int
    fee_quote: FeeQuote
    onchain_fee_amount: Optional[Decimal]
    gas_sponsored: bool
    sponsor_tx_hash: Optional[str]
    tx_url: str
    sponsor_tx_hashes: List[str] = field(default_factory=list)
    approval_tx_hash: Optional[str] = None
    completed_at: datetime = None

    def __post_init__(self):
        if self.completed_at is None:
            self.completed_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['requested_amount'] = canonical_string(self.requested_amount)
        data['fee_quote'] = self.fee_quote.to_dict()
        if self.onchain_fee_amount is not None:
            data['onchain_fee_amount'] = canonical_string(self.onchain_fee_amount)
        data['completed_at'] = self.completed_at.isoformat()
        return data


class SettlementEngine:
    """
    Funded, fee-adjusted tip transfers

    Args:
        chain: Shared chain client
        gas_sponsor: Gas sponsor bound to the admin account
        gas_config: Sponsorship thresholds and top-up amounts
        settlement_config: Allowance, gas limits and confirmation timeout
    """

    def __init__(
        self,
        chain: ChainClient,
        gas_sponsor: GasSponsor,
        gas_config: GasSponsorshipConfig,
        settlement_config: SettlementConfig,
    ):
        self.chain = chain
        self.gas_sponsor = gas_sponsor
        self.gas_config = gas_config
        self.config = settlement_config

        self.min_gas_balance = parse_units(gas_config.min_balance, NATIVE_DECIMALS)
        self.top_up_amount = parse_units(gas_config.top_up_amount, NATIVE_DECIMALS)
        self.retry_top_up_amount = parse_units(gas_config.retry_top_up_amount, NATIVE_DECIMALS)

        logger.info(
            f"Settlement engine initialized (gas threshold {gas_config.min_balance}, "
            f"top-up {gas_config.top_up_amount}/{gas_config.retry_top_up_amount})"
        )

    async def settle(self, sender_account, recipient_address: str, requested_amount) -> Result:
        """
        Execute one tip

        Args:
            sender_account: Custodial account (wallet_address, signing_key)
            recipient_address: Resolved recipient wallet address
            requested_amount: Amount as typed, Decimal or TokenAmount

        Returns:
            Result with a SettlementOutcome on success; on failure the error code,
            a one-line message and pending_tx_hash when a transaction is in flight
        """
        sender_address = sender_account.wallet_address
        logger.info(
            f"Starting settlement: {sender_address[:10]}... -> {recipient_address[:10]}... "
            f"({requested_amount})"
        )

        try:
            outcome = await self._settle(sender_account, recipient_address, requested_amount)
        except TipError as e:
            if e.operational:
                logger.error(f"✗ Settlement failed [{e.code.value}]: {e.details or e.message}")
            else:
                logger.warning(f"⚠ Settlement rejected [{e.code.value}]: {e.details or e.message}")
            return Result.from_error(e)
        except Exception as e:
            error = classify_send_error(e)
            logger.error(f"✗ Settlement failed with unexpected error: {e}")
            return Result.from_error(error)

        logger.info(
            f"✅ Settlement complete: {outcome.transaction_hash} "
            f"(block {outcome.block_number}, sponsored={outcome.gas_sponsored})"
        )
        return Result.ok(outcome)

    async def _settle(self, sender_account, recipient_address: str, requested_amount) -> SettlementOutcome:
        sender_address = sender_account.wallet_address
        private_key = sender_account.signing_key

        # Step 1-2: amount and fee quote
        amount = requested_amount if isinstance(requested_amount, TokenAmount) else normalize_amount(requested_amount)
        quote = compute_fee(amount)
        if not quote.is_valid:
            raise AmountBelowMinimumError(quote.error_reason, details=f"requested {amount}")

        requested_base_units = amount.to_base_units(self.chain.token_decimals)
        logger.info(
            f"Fee quote: {quote.fee_percentage}% = {canonical_string(quote.fee_amount)}, "
            f"net {canonical_string(quote.net_amount)} ({requested_base_units} base units)"
        )

        # Step 3: gas for the sender
        sponsorships: List[GasSponsorship] = []
        sponsorship = await self.gas_sponsor.ensure_gas(sender_address, self.min_gas_balance, self.top_up_amount)
        if sponsorship.sponsored:
            sponsorships.append(sponsorship)
            logger.info(f"✓ Gas sponsored: {sponsorship.sponsor_tx_hash}")

        # Step 4: token balance, checked before the sender pays for anything
        token_balance = await self.chain.get_token_balance(sender_address)
        if token_balance < requested_base_units:
            symbol = self.chain.config.token_symbol
            raise InsufficientTokenBalanceError(
                f"Insufficient {symbol} balance. You have "
                f"{format_units(token_balance, self.chain.token_decimals)} {symbol}, "
                f"need {amount} {symbol}.",
                details=f"balance {token_balance} < requested {requested_base_units}",
            )
        logger.info("✓ Token balance sufficient")

        # Step 5: paymaster allowance
        approval_tx_hash = await self._ensure_allowance(sender_address, private_key, requested_base_units)

        # Step 6: gas for the transfer itself
        gas_limit = await self._ensure_transfer_gas(sender_address, recipient_address, requested_base_units, sponsorships)

        # Step 7: submit and confirm
        try:
            tx_hash = await self.chain.submit_paymaster_transfer(
                private_key,
                recipient_address,
                requested_base_units,
                gas_limit=gas_limit,
            )
        except Exception as e:
            raise classify_send_error(e)

        logger.info(f"Paymaster transfer submitted: {tx_hash}")

        # Broadcast already happened: every failure from here on must carry the hash
        try:
            receipt = await self.chain.wait_for_receipt(tx_hash, timeout=self.config.confirmation_timeout_seconds)
        except Exception as e:
            raise TransactionTimeoutError(
                details=f"transfer {tx_hash} confirmation check failed: {e}",
                pending_tx_hash=tx_hash,
            )
        if receipt is None:
            raise TransactionTimeoutError(
                details=f"transfer {tx_hash} unconfirmed after {self.config.confirmation_timeout_seconds:.0f}s",
                pending_tx_hash=tx_hash,
            )
        if not receipt.succeeded:
            raise ContractRevertedError(details=f"transfer {tx_hash} reverted in block {receipt.block_number}")

        logger.info(f"✓ Transfer confirmed in block {receipt.block_number} (gas used {receipt.gas_used})")

        # Step 8: outcome
        onchain_fee = await self.chain.get_onchain_fee(requested_base_units)
        onchain_fee_amount = None
        if onchain_fee is not None:
            onchain_fee_amount = Decimal(format_units(onchain_fee, self.chain.token_decimals))
            if onchain_fee_amount != quote.fee_amount:
                logger.warning(
                    f"⚠ On-chain fee {canonical_string(onchain_fee_amount)} differs from "
                    f"quoted fee {canonical_string(quote.fee_amount)}"
                )

        sponsor_hashes = [s.sponsor_tx_hash for s in sponsorships]
        return SettlementOutcome(
            transaction_hash=tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
            sender_address=sender_address.lower(),
            recipient_address=recipient_address.lower(),
            requested_amount=amount.value,
            requested_base_units=requested_base_units,
            fee_quote=quote,
            onchain_fee_amount=onchain_fee_amount,
            gas_sponsored=bool(sponsorships),
            sponsor_tx_hash=sponsor_hashes[-1] if sponsor_hashes else None,
            sponsor_tx_hashes=sponsor_hashes,
            approval_tx_hash=approval_tx_hash,
            tx_url=self.chain.tx_url(tx_hash),
        )

    async def _ensure_allowance(self, sender_address: str, private_key: str, required: int) -> Optional[str]:
        """
        Approve the standing allowance when the current one is short

        Returns:
            Approval tx hash, or None when no approval was needed

        Raises:
            ApprovalFailedError: Approval could not be sent, reverted, timed out
                or left the allowance short
        """
        allowance = await self.chain.get_allowance(sender_address)
        if allowance >= required:
            logger.debug(f"Allowance OK: {allowance} >= {required}")
            return None

        standing = parse_units(self.config.standing_allowance, self.chain.token_decimals)
        logger.info(f"Allowance {allowance} < {required}, approving {self.config.standing_allowance}")

        try:
            approval_tx_hash = await self.chain.approve_paymaster(
                private_key,
                max(standing, required),
                gas_limit=self.config.approve_gas_limit,
            )
        except Exception as e:
            error = classify_send_error(e)
            if isinstance(error, ChainUnavailableError):
                raise error
            raise ApprovalFailedError(details=f"approve not sent: {e}")

        try:
            receipt = await self.chain.wait_for_receipt(approval_tx_hash, timeout=self.config.confirmation_timeout_seconds)
        except Exception as e:
            logger.warning(f"⚠ Approval confirmation check failed for {approval_tx_hash}: {e}")
            receipt = None
        if receipt is None:
            raise ApprovalFailedError(
                "Contract approval is still pending. Please try again in a minute.",
                details=f"approve {approval_tx_hash} unconfirmed",
                pending_tx_hash=approval_tx_hash,
            )
        if not receipt.succeeded:
            raise ApprovalFailedError(details=f"approve {approval_tx_hash} reverted")

        allowance = await self.chain.get_allowance(sender_address)
        if allowance < required:
            raise ApprovalFailedError(details=f"allowance {allowance} still < {required} after approve")

        logger.info(f"✓ Paymaster approved: {approval_tx_hash}")
        return approval_tx_hash

    async def _ensure_transfer_gas(
        self,
        sender_address: str,
        recipient_address: str,
        amount: int,
        sponsorships: List[GasSponsorship],
    ) -> int:
        """
        Make sure the sender can pay for the paymaster transfer

        Returns:
            Gas limit to submit with

        Raises:
            InsufficientGasError: Still short after the extra sponsorship
        """
        try:
            estimated_gas = await self.chain.estimate_paymaster_transfer_gas(sender_address, recipient_address, amount)
        except Exception as e:
            logger.warning(f"⚠ Gas estimation failed, using {self.config.fallback_transfer_gas}: {e}")
            estimated_gas = self.config.fallback_transfer_gas

        # The node checks balance against gas_limit * gasPrice, not gas actually used
        gas_limit = max(estimated_gas, self.config.transfer_gas_limit)
        gas_price = await self.chain.get_gas_price()
        required = gas_limit * gas_price
        balance = await self.chain.get_native_balance(sender_address)

        if balance < required:
            logger.info(f"Gas {balance} wei < transfer cost {required} wei ({gas_limit} gas), sponsoring again")
            sponsorship = await self.gas_sponsor.ensure_gas(sender_address, required, self.retry_top_up_amount)
            if sponsorship.sponsored:
                sponsorships.append(sponsorship)
            if sponsorship.balance_after < required:
                raise InsufficientGasError(
                    details=f"balance {sponsorship.balance_after} < cost {required} after sponsorship"
                )

        return gas_limit


__all__ = ['NATIVE_DECIMALS', 'SettlementEngine', 'SettlementOutcome']
