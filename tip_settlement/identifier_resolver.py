"""
Identifier Resolver

Maps what a member types as a recipient (raw address, platform mention, or a
free-text alias) to a wallet address, and maps addresses back to display names.

Normalization:
- Addresses are stored lowercased
- Aliases are stored lowercased
- Owner references are stored as-is, with mention decoration (<@id>, <@!id>) stripped

Authorization (who may create or remove which mapping) is enforced by the
caller; this component only validates and stores.
"""

import re
from typing import List, Optional, Tuple

from loguru import logger
from web3 import AsyncWeb3

from .errors import InvalidAddressError, InvalidIdentifierError, MappingNotFoundError
from .ledger_db import ALIAS, IDENTIFIER_KINDS, OWNER, IdentifierMapping, LedgerDatabase


_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_MENTION = re.compile(r"^<@!?(?P<owner>[^<>@\s]+)>$")


def is_valid_address(address: Optional[str]) -> bool:
    """
    Well-formed 20-byte hex address

    All-lowercase and all-uppercase hex are accepted as-is; mixed case must
    carry a valid EIP-55 checksum.
    """
    if not address or not _ADDRESS.match(address):
        return False
    body = address[2:]
    if body.islower() or body.isupper() or body.isdigit():
        return True
    return AsyncWeb3.is_checksum_address(address)


def strip_mention(identifier: str) -> str:
    """'<@123>' / '<@!123>' -> '123', anything else unchanged (trimmed)"""
    identifier = identifier.strip()
    match = _MENTION.match(identifier)
    return match.group('owner') if match else identifier


def format_mention(owner_reference: str) -> str:
    return f"<@{owner_reference}>"


def format_address(address: Optional[str]) -> str:
    """0x1234…abcd"""
    if not address or len(address) < 10:
        return address or ''
    return f"{address[:6]}…{address[-4:]}"


def normalize_identifier(identifier: str, kind: str) -> str:
    if kind not in IDENTIFIER_KINDS:
        raise InvalidIdentifierError(details=f"unknown identifier kind {kind!r}")
    key = strip_mention(identifier) if kind == OWNER else identifier.strip().lower()
    if not key:
        raise InvalidIdentifierError(details="empty identifier")
    return key


class IdentifierResolver:
    """
    Recipient lookup on top of the identifier_mappings table

    Usage:
        resolver = IdentifierResolver(db)
        resolver.create_or_update_mapping("alice", "alias", "0xabc...", actor="123")
        resolver.resolve_address("Alice")  # -> "0xabc..."
    """

    def __init__(self, db: LedgerDatabase):
        self.db = db

    def resolve_address(self, identifier: str) -> Optional[str]:
        """
        Resolve a recipient reference to a lowercased wallet address

        Args:
            identifier: Address, mention, owner reference or alias

        Returns:
            Address, or None when nothing matches
        """
        if not identifier:
            return None

        text = identifier.strip()
        if is_valid_address(text):
            return text.lower()

        owner_reference = strip_mention(text)
        mapping = self.db.get_mapping(owner_reference, OWNER)
        if mapping is None:
            mapping = self.db.get_mapping(text.lower(), ALIAS)

        if mapping is None:
            logger.debug(f"No mapping for identifier {text!r}")
            return None

        return mapping.resolved_address

    def display_name_for(self, address: str) -> str:
        """
        Human-facing name for an address

        Owner mappings show the cached display name (or a mention), aliases
        show the alias, unmapped addresses are truncated.
        """
        mapping = self.db.find_mapping_by_address(address)
        if mapping is None:
            return format_address(address)
        if mapping.identifier_kind == OWNER:
            return mapping.display_name_cache or format_mention(mapping.identifier)
        return mapping.identifier

    def create_or_update_mapping(
        self,
        identifier: str,
        kind: str,
        address: str,
        actor: str,
        display_name: Optional[str] = None,
    ) -> Tuple[IdentifierMapping, bool]:
        """
        Upsert a mapping keyed on (normalized identifier, kind)

        Args:
            identifier: Owner reference / mention or alias text
            kind: 'owner' or 'alias'
            address: Wallet address to point at
            actor: Owner reference performing the change (recorded as creator on insert)
            display_name: Display name cache for owner mappings

        Returns:
            Tuple of (mapping, is_update)

        Raises:
            InvalidAddressError: If address is not well-formed
            InvalidIdentifierError: If identifier is empty or kind unknown
        """
        if not is_valid_address(address):
            raise InvalidAddressError(details=f"rejected mapping address {address!r}")

        key = normalize_identifier(identifier or '', kind)

        mapping, is_update = self.db.upsert_mapping(
            identifier=key,
            identifier_kind=kind,
            resolved_address=address.lower(),
            created_by=strip_mention(actor),
            display_name_cache=display_name,
        )

        action = "updated" if is_update else "created"
        logger.info(f"✓ Mapping {action}: {kind}:{key} -> {format_address(mapping.resolved_address)}")
        return mapping, is_update

    def remove_mapping(self, identifier: str, kind: str) -> IdentifierMapping:
        """
        Delete a mapping by exact normalized key

        Returns:
            The removed mapping

        Raises:
            MappingNotFoundError: If no such mapping exists
        """
        key = normalize_identifier(identifier or '', kind)
        mapping = self.db.get_mapping(key, kind)
        if mapping is None or not self.db.delete_mapping(key, kind):
            raise MappingNotFoundError(details=f"no mapping {kind}:{key}")

        logger.info(f"✓ Mapping removed: {kind}:{key}")
        return mapping

    def get_mapping(self, identifier: str, kind: str) -> Optional[IdentifierMapping]:
        return self.db.get_mapping(normalize_identifier(identifier or '', kind), kind)

    def list_mappings_for(self, owner_reference: str) -> List[IdentifierMapping]:
        return self.db.list_mappings_for(strip_mention(owner_reference))


__all__ = [
    'IdentifierResolver',
    'format_address',
    'format_mention',
    'is_valid_address',
    'normalize_identifier',
    'strip_mention',
]
