"""
Account Service

Custodial wallet lifecycle: create a fresh key pair, link an existing wallet by
private key, unlink. Each owner reference holds at most one wallet and each
wallet belongs to at most one owner.

Creating or linking also points the owner's 'owner' mapping at the wallet so
mentions resolve; unlinking removes that mapping if it still points there.
"""

from typing import Optional

from loguru import logger

from .chain_client import account_from_key, generate_account
from .errors import (
    InvalidAddressError,
    InvalidPrivateKeyError,
    WalletAlreadyLinkedError,
    WalletNotFoundError,
)
from .identifier_resolver import IdentifierResolver, format_address, is_valid_address, strip_mention
from .ledger_db import OWNER, Account, LedgerDatabase, utc_now


class AccountService:
    """Custodial accounts on top of the ledger database"""

    def __init__(self, db: LedgerDatabase, resolver: IdentifierResolver):
        self.db = db
        self.resolver = resolver

    def get_account(self, owner_reference: str) -> Account:
        """
        Raises:
            WalletNotFoundError: If the owner has no wallet
        """
        account = self.db.get_account_by_owner(strip_mention(owner_reference))
        if account is None:
            raise WalletNotFoundError(details=f"no account for {owner_reference}")
        return account

    def find_account(self, owner_reference: str) -> Optional[Account]:
        return self.db.get_account_by_owner(strip_mention(owner_reference))

    def create_wallet(self, owner_reference: str, display_name: str) -> Account:
        """
        Generate a new custodial wallet

        Returns:
            The stored account (the signing key is in it; never show it twice)

        Raises:
            WalletAlreadyLinkedError: If the owner already has a wallet
        """
        owner_reference = strip_mention(owner_reference)
        if self.db.get_account_by_owner(owner_reference) is not None:
            raise WalletAlreadyLinkedError(details=f"{owner_reference} already has a wallet")

        key_pair = generate_account()
        account = self._store(owner_reference, display_name, key_pair.address, '0x' + bytes(key_pair.key).hex())
        logger.info(f"✓ Wallet created for {owner_reference}: {format_address(account.wallet_address)}")
        return account

    def link_wallet(self, owner_reference: str, display_name: str, address: str, private_key: str) -> Account:
        """
        Link an existing wallet by its private key

        Raises:
            InvalidAddressError: Malformed address
            InvalidPrivateKeyError: Unparseable key, or key does not derive address
            WalletAlreadyLinkedError: Owner already linked, or address owned by someone else
        """
        owner_reference = strip_mention(owner_reference)
        address = (address or '').strip()
        if not is_valid_address(address):
            raise InvalidAddressError(details=f"link rejected address {address!r}")

        key = (private_key or '').strip()
        if key and not key.startswith('0x'):
            key = '0x' + key
        try:
            derived = account_from_key(key).address
        except Exception as e:
            raise InvalidPrivateKeyError(details=f"unparseable key: {type(e).__name__}")

        if derived.lower() != address.lower():
            raise InvalidPrivateKeyError(
                "The private key does not match the provided wallet address.",
                details=f"key derives {format_address(derived)}, expected {format_address(address)}",
            )

        if self.db.get_account_by_owner(owner_reference) is not None:
            raise WalletAlreadyLinkedError(details=f"{owner_reference} already has a wallet")

        holder = self.db.get_account_by_address(address)
        if holder is not None:
            raise WalletAlreadyLinkedError(
                "This wallet is already linked to another member.",
                details=f"{format_address(address)} held by {holder.owner_reference}",
            )

        account = self._store(owner_reference, display_name, derived, key)
        logger.info(f"✓ Wallet linked for {owner_reference}: {format_address(account.wallet_address)}")
        return account

    def unlink_wallet(self, owner_reference: str) -> Account:
        """
        Remove the owner's account

        Returns:
            The removed account

        Raises:
            WalletNotFoundError: If the owner has no wallet
        """
        account = self.get_account(owner_reference)
        self.db.delete_account(account.owner_reference)

        mapping = self.db.get_mapping(account.owner_reference, OWNER)
        if mapping is not None and mapping.resolved_address == account.wallet_address:
            self.db.delete_mapping(account.owner_reference, OWNER)

        logger.info(f"✓ Wallet unlinked for {account.owner_reference}: {format_address(account.wallet_address)}")
        return account

    def touch(self, account: Account):
        self.db.touch_account(account.owner_reference)

    def _store(self, owner_reference: str, display_name: str, address: str, signing_key: str) -> Account:
        now = utc_now()
        account = Account(
            owner_reference=owner_reference,
            display_name=display_name or owner_reference,
            wallet_address=address.lower(),
            signing_key=signing_key,
            created_at=now,
            last_activity=now,
        )
        if not self.db.insert_account(account):
            raise WalletAlreadyLinkedError(details=f"unique constraint on {owner_reference} / {format_address(address)}")

        self.resolver.create_or_update_mapping(
            owner_reference,
            OWNER,
            account.wallet_address,
            actor=owner_reference,
            display_name=account.display_name,
        )
        return account


__all__ = ['AccountService']
