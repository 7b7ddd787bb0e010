"""
Tip Service

Entry point for the chat layer. Wires the chain client, gas sponsor,
settlement engine, resolver, ledger and accounts together and exposes every
operation as a coroutine returning a Result. No TipError escapes this class.

Usage:
    config = load_config()
    service = await TipService.create(config)
    result = await service.send_tip("123", "<@456>", "10,5", message="thanks!")
    if not result.success:
        reply(result.message)
    await service.close()
"""

import functools
from datetime import datetime
from typing import Optional

from loguru import logger

from .accounts import AccountService
from .amounts import format_units, normalize_amount
from .chain_client import ChainClient, classify_send_error
from .config import TipConfig
from .errors import (
    AddressNotFoundError,
    AmountBelowMinimumError,
    DuplicateMappingOwnerMismatchError,
    MappingNotFoundError,
    Result,
    StorageError,
    TipError,
)
from .fee_calculator import compute_fee, get_fee_tiers
from .gas_sponsor import GasSponsor
from .identifier_resolver import IdentifierResolver, normalize_identifier, strip_mention
from .ledger_db import OWNER, LedgerDatabase
from .ledger_recorder import LedgerRecorder
from .settlement_engine import NATIVE_DECIMALS, SettlementEngine, SettlementOutcome


def result_boundary(func):
    """Convert anything raised by an operation into a failed Result"""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except TipError as e:
            log = logger.error if e.operational else logger.info
            log(f"{func.__name__} -> {e.code.value}: {e.details or e.message}")
            return Result.from_error(e)
        except Exception as e:
            logger.error(f"✗ {func.__name__} failed: {e}")
            return Result.from_error(classify_send_error(e))

    return wrapper


class TipService:
    """
    Tip operations for the chat layer

    Args:
        config: Validated configuration
        chain: Connected chain client (or a stand-in with the same interface)
        db: Ledger database
    """

    def __init__(self, config: TipConfig, chain: ChainClient, db: LedgerDatabase):
        self.config = config
        self.chain = chain
        self.db = db

        self.resolver = IdentifierResolver(db)
        self.accounts = AccountService(db, self.resolver)
        self.recorder = LedgerRecorder(db, self.resolver)
        self.gas_sponsor = GasSponsor(chain, config.chain.admin_private_key, config.gas, config.settlement)
        self.engine = SettlementEngine(chain, self.gas_sponsor, config.gas, config.settlement)

        logger.info("Tip service initialized")

    @classmethod
    async def create(cls, config: TipConfig) -> 'TipService':
        """
        Connect to the chain and open the ledger

        Raises:
            ValueError: Missing chain secrets
            ChainUnavailableError: RPC endpoint unreachable
        """
        config.validate()
        chain = await ChainClient.connect(config)
        db = LedgerDatabase(config.storage.db_path)
        return cls(config, chain, db)

    async def close(self):
        await self.chain.close()
        self.db.close()
        logger.info("Tip service closed")

    # ============================================================
    # CALLER CONTRACT
    # ============================================================

    @result_boundary
    async def resolve_address(self, identifier: str) -> Result:
        address = self.resolver.resolve_address(identifier)
        if address is None:
            raise AddressNotFoundError(details=f"unresolved identifier {identifier!r}")
        return Result.ok(address)

    @result_boundary
    async def display_name_for(self, address: str) -> Result:
        return Result.ok(self.resolver.display_name_for(address))

    @result_boundary
    async def create_or_update_mapping(
        self,
        identifier: str,
        kind: str,
        address: str,
        actor: str,
        display_name: Optional[str] = None,
    ) -> Result:
        mapping, is_update = self.resolver.create_or_update_mapping(identifier, kind, address, actor, display_name)
        return Result.ok(mapping, "Mapping updated" if is_update else "Mapping created", is_update=is_update)

    @result_boundary
    async def remove_mapping(self, identifier: str, kind: str) -> Result:
        mapping = self.resolver.remove_mapping(identifier, kind)
        return Result.ok(mapping, "Mapping removed")

    def compute_fee(self, amount) -> Result:
        """Quote a fee for member input (sync, no I/O)"""
        try:
            quote = compute_fee(normalize_amount(amount))
        except TipError as e:
            return Result.from_error(e)
        if not quote.is_valid:
            return Result.from_error(AmountBelowMinimumError(quote.error_reason))
        return Result.ok(quote)

    def get_fee_tiers(self):
        return get_fee_tiers()

    async def settle(self, sender_account, recipient_address: str, requested_amount) -> Result:
        return await self.engine.settle(sender_account, recipient_address, requested_amount)

    @result_boundary
    async def record_transfer(
        self,
        outcome: SettlementOutcome,
        sender_account,
        recipient_address: str,
        message: str = "",
    ) -> Result:
        record, already_recorded = self.recorder.record_transfer(outcome, sender_account, recipient_address, message)
        return Result.ok(record, already_recorded=already_recorded)

    # ============================================================
    # TIPPING
    # ============================================================

    @result_boundary
    async def send_tip(self, sender_owner: str, recipient_identifier: str, amount, message: str = "") -> Result:
        """
        Resolve, settle and record one tip

        Returns:
            Result with the SettlementOutcome; extra carries the ledger record
            and recorded=False when the transfer confirmed but the ledger write
            failed (the tip must not be resent in that case)
        """
        sender = self.accounts.get_account(sender_owner)

        recipient_address = self.resolver.resolve_address(recipient_identifier)
        if recipient_address is None:
            raise AddressNotFoundError(details=f"unresolved recipient {recipient_identifier!r}")

        result = await self.engine.settle(sender, recipient_address, amount)
        if not result.success:
            return result

        outcome: SettlementOutcome = result.data
        try:
            record, already_recorded = self.recorder.record_transfer(outcome, sender, recipient_address, message)
        except StorageError as e:
            logger.error(f"✗ Transfer {outcome.transaction_hash} confirmed but not recorded: {e.details}")
            return Result.ok(outcome, "Tip sent, ledger entry pending", record=None, recorded=False)

        try:
            self.accounts.touch(sender)
        except StorageError as e:
            logger.warning(f"⚠ Could not update last activity for {sender.owner_reference}: {e.details}")

        return Result.ok(
            outcome,
            f"Tip sent: {outcome.tx_url}",
            record=record,
            recorded=True,
            already_recorded=already_recorded,
        )

    # ============================================================
    # MAPPINGS (authorized)
    # ============================================================

    def _authorize_mapping(self, actor: str, identifier: str, kind: str):
        actor = strip_mention(actor)
        key = normalize_identifier(identifier or '', kind)

        if kind == OWNER:
            if key != actor:
                raise DuplicateMappingOwnerMismatchError(
                    "You can only map your own member id.",
                    details=f"{actor} tried to change owner mapping {key}",
                )
            return

        existing = self.db.get_mapping(key, kind)
        if existing is not None and existing.created_by != actor:
            raise DuplicateMappingOwnerMismatchError(
                f"The alias '{key}' belongs to another member.",
                details=f"{actor} tried to change alias {key} created by {existing.created_by}",
            )

    @result_boundary
    async def map_identifier(
        self,
        actor: str,
        identifier: str,
        kind: str,
        address: str,
        display_name: Optional[str] = None,
    ) -> Result:
        """Create or re-point a mapping on behalf of actor"""
        self._authorize_mapping(actor, identifier, kind)
        mapping, is_update = self.resolver.create_or_update_mapping(
            identifier, kind, address, strip_mention(actor), display_name
        )
        return Result.ok(mapping, "Mapping updated" if is_update else "Mapping created", is_update=is_update)

    @result_boundary
    async def unmap_identifier(self, actor: str, identifier: str, kind: str) -> Result:
        """Remove a mapping on behalf of actor"""
        self._authorize_mapping(actor, identifier, kind)
        mapping = self.resolver.get_mapping(identifier, kind)
        if mapping is None:
            raise MappingNotFoundError(details=f"no mapping {kind}:{identifier}")
        self.resolver.remove_mapping(identifier, kind)
        return Result.ok(mapping, "Mapping removed")

    @result_boundary
    async def list_mappings(self, owner_reference: str) -> Result:
        return Result.ok(self.resolver.list_mappings_for(owner_reference))

    # ============================================================
    # ACCOUNTS
    # ============================================================

    @result_boundary
    async def create_wallet(self, owner_reference: str, display_name: str) -> Result:
        account = self.accounts.create_wallet(owner_reference, display_name)
        return Result.ok(
            account.public_dict(),
            "Wallet created. Store the private key somewhere safe, it will not be shown again.",
            signing_key=account.signing_key,
            address_url=self.chain.address_url(account.wallet_address),
        )

    @result_boundary
    async def link_wallet(self, owner_reference: str, display_name: str, address: str, private_key: str) -> Result:
        account = self.accounts.link_wallet(owner_reference, display_name, address, private_key)
        return Result.ok(account.public_dict(), "Wallet linked")

    @result_boundary
    async def unlink_wallet(self, owner_reference: str) -> Result:
        account = self.accounts.unlink_wallet(owner_reference)
        return Result.ok(account.public_dict(), "Wallet unlinked")

    @result_boundary
    async def get_account(self, owner_reference: str) -> Result:
        return Result.ok(self.accounts.get_account(owner_reference).public_dict())

    @result_boundary
    async def get_balance(self, owner_reference: str) -> Result:
        """Token and native balances of the owner's wallet"""
        account = self.accounts.get_account(owner_reference)
        token_balance = await self.chain.get_token_balance(account.wallet_address)
        native_balance = await self.chain.get_native_balance(account.wallet_address)

        return Result.ok({
            'address': account.wallet_address,
            'token_balance': format_units(token_balance, self.chain.token_decimals),
            'token_symbol': self.chain.config.token_symbol,
            'native_balance': format_units(native_balance, NATIVE_DECIMALS),
            'native_symbol': self.chain.config.native_symbol,
            'address_url': self.chain.address_url(account.wallet_address),
        })

    # ============================================================
    # LEDGER READS
    # ============================================================

    @result_boundary
    async def get_history(
        self,
        owner_reference: str,
        page: int = 1,
        limit: int = LedgerRecorder.HISTORY_PAGE_SIZE,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Result:
        owner_reference = strip_mention(owner_reference)
        account = self.accounts.find_account(owner_reference)
        address = account.wallet_address if account else None
        return Result.ok(self.recorder.get_user_history(owner_reference, address, page, limit, since, until))

    @result_boundary
    async def get_leaderboard(
        self,
        page: int = 1,
        limit: int = LedgerRecorder.LEADERBOARD_PAGE_SIZE,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Result:
        return Result.ok(self.recorder.get_leaderboard(page, limit, since, until))

    @result_boundary
    async def get_statistics(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> Result:
        return Result.ok(self.recorder.get_statistics(since, until))

    @result_boundary
    async def get_collected_fees(self) -> Result:
        """Fees held by the paymaster contract"""
        collected = await self.chain.get_collected_fees()
        return Result.ok(format_units(collected, self.chain.token_decimals))


__all__ = ['TipService', 'result_boundary']
