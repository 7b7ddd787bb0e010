"""
Ledger Recorder

Writes each confirmed settlement exactly once, keyed on the transaction hash,
and serves the read side: per-member history, leaderboard and totals.

Sender and recipient display names are copied into the record at write time so
history reads never join against mappings. Later renames do not rewrite old
records.
"""

import math
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from .amounts import canonical_string
from .identifier_resolver import IdentifierResolver
from .ledger_db import LedgerDatabase, TransferRecord
from .settlement_engine import SettlementOutcome


class LedgerRecorder:
    """
    Append-only transfer ledger

    Args:
        db: Ledger database
        resolver: Identifier resolver for recipient display names
    """

    HISTORY_PAGE_SIZE = 5
    LEADERBOARD_PAGE_SIZE = 10

    def __init__(self, db: LedgerDatabase, resolver: IdentifierResolver):
        self.db = db
        self.resolver = resolver

    def record_transfer(
        self,
        outcome: SettlementOutcome,
        sender_account,
        recipient_address: str,
        message: str = "",
    ) -> Tuple[TransferRecord, bool]:
        """
        Persist a confirmed settlement

        Args:
            outcome: Successful settlement outcome
            sender_account: Sender's account (owner_reference, display_name, wallet_address)
            recipient_address: Recipient wallet address
            message: Optional tip message

        Returns:
            Tuple of (record, already_recorded). A repeated call with the same
            transaction hash returns the stored record and already_recorded=True.

        Raises:
            StorageError: If the database write fails
        """
        existing = self.db.get_transfer(outcome.transaction_hash)
        if existing is not None:
            logger.info(f"Transfer {outcome.transaction_hash} already recorded")
            return existing, True

        quote = outcome.fee_quote
        record = TransferRecord(
            transaction_hash=outcome.transaction_hash,
            sender_owner_reference=sender_account.owner_reference,
            sender_display_name=sender_account.display_name or self.resolver.display_name_for(sender_account.wallet_address),
            sender_address=sender_account.wallet_address.lower(),
            recipient_address=recipient_address.lower(),
            recipient_display_name=self.resolver.display_name_for(recipient_address),
            requested_amount=quote.requested_amount,
            fee_amount=quote.fee_amount,
            fee_percentage=quote.fee_percentage,
            net_amount=quote.net_amount,
            message=message or "",
            block_number=outcome.block_number,
            gas_sponsored=outcome.gas_sponsored,
            sponsor_transaction_hash=outcome.sponsor_tx_hash,
            onchain_fee_amount=outcome.onchain_fee_amount,
            timestamp=outcome.completed_at.astimezone(timezone.utc).isoformat(),
        )

        if not self.db.insert_transfer(record):
            # lost a race with a concurrent writer for the same hash
            return self.db.get_transfer(outcome.transaction_hash), True

        logger.info(
            f"✓ Ledger entry: {record.sender_display_name} -> {record.recipient_display_name} "
            f"{canonical_string(record.requested_amount)} ({record.transaction_hash[:12]}...)"
        )
        return record, False

    def get_record(self, transaction_hash: str) -> Optional[TransferRecord]:
        return self.db.get_transfer(transaction_hash)

    def get_user_history(
        self,
        owner_reference: str,
        address: Optional[str] = None,
        page: int = 1,
        limit: int = HISTORY_PAGE_SIZE,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Paginated sent and received tips for a member

        Sent tips are matched by owner reference, received tips by wallet
        address (so tips to an address received before linking still show).

        Returns:
            Dict with sent, received, page, total_pages and totals
        """
        page = max(1, page)
        offset = (page - 1) * limit

        sent = self.db.get_sent_transfers(owner_reference, limit, offset, since, until)
        sent_total = self.db.count_sent_transfers(owner_reference, since, until)

        received: List[TransferRecord] = []
        received_total = 0
        if address:
            received = self.db.get_received_transfers(address, limit, offset, since, until)
            received_total = self.db.count_received_transfers(address, since, until)

        total_pages = max(1, math.ceil(max(sent_total, received_total) / limit))

        return {
            'sent': sent,
            'received': received,
            'sent_total': sent_total,
            'received_total': received_total,
            'page': page,
            'total_pages': total_pages,
        }

    def get_leaderboard(
        self,
        page: int = 1,
        limit: int = LEADERBOARD_PAGE_SIZE,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Top senders by total requested amount

        Totals are summed as Decimal in Python; base-unit sums overflow SQLite
        integers.

        Returns:
            Dict with entries (rank, owner_reference, display_name, total_sent,
            tip_count), page and total_pages
        """
        totals: Dict[str, Decimal] = defaultdict(Decimal)
        counts: Dict[str, int] = defaultdict(int)
        names: Dict[str, str] = {}

        # newest first, so the first name seen is the current one
        for record in self.db.get_transfers_by_date_range(since, until):
            owner = record.sender_owner_reference
            totals[owner] += record.requested_amount
            counts[owner] += 1
            names.setdefault(owner, record.sender_display_name)

        ranked = sorted(totals, key=lambda owner: (-totals[owner], -counts[owner], owner))

        page = max(1, page)
        offset = (page - 1) * limit
        entries = [
            {
                'rank': offset + index + 1,
                'owner_reference': owner,
                'display_name': names[owner],
                'total_sent': totals[owner],
                'tip_count': counts[owner],
            }
            for index, owner in enumerate(ranked[offset:offset + limit])
        ]

        return {
            'entries': entries,
            'page': page,
            'total_pages': max(1, math.ceil(len(ranked) / limit)),
        }

    def get_statistics(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Ledger totals

        Returns:
            Statistics dictionary
        """
        records = self.db.get_transfers_by_date_range(since, until)

        total_volume = sum((r.requested_amount for r in records), Decimal('0'))
        total_fees = sum((r.fee_amount for r in records), Decimal('0'))
        sponsored = sum(1 for r in records if r.gas_sponsored)

        return {
            'total_transfers': len(records),
            'total_volume': total_volume,
            'total_fees': total_fees,
            'total_net': total_volume - total_fees,
            'sponsored_transfers': sponsored,
            'unique_senders': len({r.sender_owner_reference for r in records}),
            'unique_recipients': len({r.recipient_address for r in records}),
            'avg_fee_percent': (total_fees / total_volume * 100) if total_volume > 0 else Decimal('0'),
        }


__all__ = ['LedgerRecorder']
