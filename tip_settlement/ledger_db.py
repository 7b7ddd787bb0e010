"""
Tip Ledger Database

SQLite storage for custodial accounts, identifier mappings and the append-only
transfer ledger.

Tables:
- accounts: one custodial wallet per owner reference
- identifier_mappings: owner ids and aliases -> wallet address
- transfer_records: confirmed tips, unique on transaction hash

Amounts are stored as canonical decimal strings and timestamps as ISO-8601 UTC,
so range filters compare lexicographically.
"""

import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from loguru import logger

from .amounts import canonical_string
from .errors import StorageError


OWNER = 'owner'
ALIAS = 'alias'
IDENTIFIER_KINDS = (OWNER, ALIAS)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


@dataclass
class Account:
    """Custodial wallet owned by a community member"""
    owner_reference: str
    display_name: str
    wallet_address: str
    signing_key: str
    created_at: str
    last_activity: str

    def public_dict(self) -> Dict:
        """Account fields without the signing key"""
        data = asdict(self)
        data.pop('signing_key')
        return data

    def __repr__(self):
        return f"Account({self.owner_reference} -> {self.wallet_address})"


@dataclass
class IdentifierMapping:
    """Owner id or alias pointing at a wallet address"""
    identifier: str
    identifier_kind: str
    resolved_address: str
    display_name_cache: Optional[str]
    created_by: str
    created_at: str
    updated_at: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class TransferRecord:
    """Confirmed tip, immutable once written"""
    transaction_hash: str
    sender_owner_reference: str
    sender_display_name: str
    sender_address: str
    recipient_address: str
    recipient_display_name: str
    requested_amount: Decimal
    fee_amount: Decimal
    fee_percentage: int
    net_amount: Decimal
    message: str
    block_number: Optional[int]
    gas_sponsored: bool
    sponsor_transaction_hash: Optional[str]
    onchain_fee_amount: Optional[Decimal]
    timestamp: str

    def to_dict(self) -> Dict:
        data = asdict(self)
        for key in ('requested_amount', 'fee_amount', 'net_amount', 'onchain_fee_amount'):
            if data[key] is not None:
                data[key] = canonical_string(data[key])
        return data


class LedgerDatabase:
    """
    SQLite database for the tip ledger

    Features:
    - Account storage with unique owner and wallet address
    - Identifier mapping upserts keyed on (identifier, kind)
    - Append-only transfer records keyed on transaction hash
    - Paginated history and date range queries
    """

    def __init__(self, db_path: str = "tip_ledger.db"):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database (":memory:" for a throwaway one)
        """
        self.db_path = db_path if db_path == ":memory:" else str(Path(db_path))
        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()
        logger.info(f"Tip ledger database initialized: {self.db_path}")

    def _initialize_db(self):
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_reference TEXT UNIQUE NOT NULL,
                display_name TEXT NOT NULL,
                wallet_address TEXT UNIQUE NOT NULL,
                signing_key TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                last_activity TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS identifier_mappings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                identifier TEXT NOT NULL,
                identifier_kind TEXT NOT NULL,
                resolved_address TEXT NOT NULL,
                display_name_cache TEXT,
                created_by TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                CONSTRAINT unique_identifier UNIQUE (identifier, identifier_kind),
                CONSTRAINT valid_kind CHECK (identifier_kind IN ('owner', 'alias'))
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transfer_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_hash TEXT UNIQUE NOT NULL,
                sender_owner_reference TEXT NOT NULL,
                sender_display_name TEXT NOT NULL,
                sender_address TEXT NOT NULL,
                recipient_address TEXT NOT NULL,
                recipient_display_name TEXT NOT NULL,
                requested_amount TEXT NOT NULL,
                fee_amount TEXT NOT NULL,
                fee_percentage INTEGER NOT NULL,
                net_amount TEXT NOT NULL,
                message TEXT DEFAULT '',
                block_number INTEGER,
                gas_sponsored BOOLEAN DEFAULT 0,
                sponsor_transaction_hash TEXT,
                onchain_fee_amount TEXT,
                timestamp TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_mappings_address ON identifier_mappings(resolved_address)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_mappings_created_by ON identifier_mappings(created_by)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transfers_sender ON transfer_records(sender_owner_reference)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transfers_recipient ON transfer_records(recipient_address)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transfers_timestamp ON transfer_records(timestamp)")

        self.conn.commit()
        logger.debug("Database tables created successfully")

    def _fail(self, action: str, error: Exception):
        logger.error(f"✗ Error {action}: {error}")
        self.conn.rollback()
        raise StorageError(details=f"{action}: {error}")

    # ============================================================
    # ACCOUNTS
    # ============================================================

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            owner_reference=row['owner_reference'],
            display_name=row['display_name'],
            wallet_address=row['wallet_address'],
            signing_key=row['signing_key'],
            created_at=row['created_at'],
            last_activity=row['last_activity'],
        )

    def insert_account(self, account: Account) -> bool:
        """
        Store a new account

        Returns:
            False if the owner or wallet address is already taken
        """
        try:
            self.conn.execute("""
                INSERT INTO accounts (
                    owner_reference, display_name, wallet_address, signing_key,
                    created_at, last_activity
                ) VALUES (?, ?, ?, ?, ?, ?)
            """, (
                account.owner_reference,
                account.display_name,
                account.wallet_address,
                account.signing_key,
                account.created_at,
                account.last_activity,
            ))
            self.conn.commit()
            logger.info(f"✓ Account stored: {account.owner_reference} -> {account.wallet_address[:10]}...")
            return True
        except sqlite3.IntegrityError:
            self.conn.rollback()
            logger.warning(f"Duplicate account for {account.owner_reference} / {account.wallet_address[:10]}...")
            return False
        except sqlite3.Error as e:
            self._fail("storing account", e)

    def get_account_by_owner(self, owner_reference: str) -> Optional[Account]:
        row = self.conn.execute(
            "SELECT * FROM accounts WHERE owner_reference = ?", (owner_reference,)
        ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_address(self, wallet_address: str) -> Optional[Account]:
        row = self.conn.execute(
            "SELECT * FROM accounts WHERE wallet_address = ?", (wallet_address.lower(),)
        ).fetchone()
        return self._row_to_account(row) if row else None

    def touch_account(self, owner_reference: str):
        try:
            self.conn.execute(
                "UPDATE accounts SET last_activity = ? WHERE owner_reference = ?",
                (utc_now(), owner_reference),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self._fail("updating account activity", e)

    def delete_account(self, owner_reference: str) -> bool:
        try:
            cursor = self.conn.execute("DELETE FROM accounts WHERE owner_reference = ?", (owner_reference,))
            self.conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._fail("deleting account", e)

    # ============================================================
    # IDENTIFIER MAPPINGS
    # ============================================================

    @staticmethod
    def _row_to_mapping(row: sqlite3.Row) -> IdentifierMapping:
        return IdentifierMapping(
            identifier=row['identifier'],
            identifier_kind=row['identifier_kind'],
            resolved_address=row['resolved_address'],
            display_name_cache=row['display_name_cache'],
            created_by=row['created_by'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    def get_mapping(self, identifier: str, identifier_kind: str) -> Optional[IdentifierMapping]:
        row = self.conn.execute(
            "SELECT * FROM identifier_mappings WHERE identifier = ? AND identifier_kind = ?",
            (identifier, identifier_kind),
        ).fetchone()
        return self._row_to_mapping(row) if row else None

    def find_mapping_by_address(self, address: str) -> Optional[IdentifierMapping]:
        """Mapping for an address, owner kind first, then most recently updated"""
        row = self.conn.execute("""
            SELECT * FROM identifier_mappings
            WHERE resolved_address = ?
            ORDER BY CASE identifier_kind WHEN 'owner' THEN 0 ELSE 1 END, updated_at DESC
            LIMIT 1
        """, (address.lower(),)).fetchone()
        return self._row_to_mapping(row) if row else None

    def upsert_mapping(
        self,
        identifier: str,
        identifier_kind: str,
        resolved_address: str,
        created_by: str,
        display_name_cache: Optional[str] = None,
    ) -> Tuple[IdentifierMapping, bool]:
        """
        Create or overwrite a mapping keyed on (identifier, kind)

        Returns:
            Tuple of (stored mapping, is_update)
        """
        now = utc_now()
        existed = self.get_mapping(identifier, identifier_kind) is not None
        try:
            self.conn.execute("""
                INSERT INTO identifier_mappings (
                    identifier, identifier_kind, resolved_address, display_name_cache,
                    created_by, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (identifier, identifier_kind) DO UPDATE SET
                    resolved_address = excluded.resolved_address,
                    display_name_cache = COALESCE(excluded.display_name_cache, identifier_mappings.display_name_cache),
                    updated_at = excluded.updated_at
            """, (identifier, identifier_kind, resolved_address, display_name_cache, created_by, now, now))
            self.conn.commit()
        except sqlite3.Error as e:
            self._fail("upserting mapping", e)

        return self.get_mapping(identifier, identifier_kind), existed

    def delete_mapping(self, identifier: str, identifier_kind: str) -> bool:
        try:
            cursor = self.conn.execute(
                "DELETE FROM identifier_mappings WHERE identifier = ? AND identifier_kind = ?",
                (identifier, identifier_kind),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._fail("deleting mapping", e)

    def list_mappings_for(self, owner_reference: str) -> List[IdentifierMapping]:
        """Owner's own mapping plus every mapping they created, newest first"""
        rows = self.conn.execute("""
            SELECT * FROM identifier_mappings
            WHERE (identifier = ? AND identifier_kind = 'owner') OR created_by = ?
            ORDER BY created_at DESC
        """, (owner_reference, owner_reference)).fetchall()
        return [self._row_to_mapping(row) for row in rows]

    # ============================================================
    # TRANSFER RECORDS
    # ============================================================

    @staticmethod
    def _row_to_transfer(row: sqlite3.Row) -> TransferRecord:
        return TransferRecord(
            transaction_hash=row['transaction_hash'],
            sender_owner_reference=row['sender_owner_reference'],
            sender_display_name=row['sender_display_name'],
            sender_address=row['sender_address'],
            recipient_address=row['recipient_address'],
            recipient_display_name=row['recipient_display_name'],
            requested_amount=Decimal(row['requested_amount']),
            fee_amount=Decimal(row['fee_amount']),
            fee_percentage=row['fee_percentage'],
            net_amount=Decimal(row['net_amount']),
            message=row['message'] or '',
            block_number=row['block_number'],
            gas_sponsored=bool(row['gas_sponsored']),
            sponsor_transaction_hash=row['sponsor_transaction_hash'],
            onchain_fee_amount=Decimal(row['onchain_fee_amount']) if row['onchain_fee_amount'] else None,
            timestamp=row['timestamp'],
        )

    def insert_transfer(self, record: TransferRecord) -> bool:
        """
        Append a transfer record

        Returns:
            False if a record with the same transaction hash already exists
        """
        try:
            self.conn.execute("""
                INSERT INTO transfer_records (
                    transaction_hash, sender_owner_reference, sender_display_name,
                    sender_address, recipient_address, recipient_display_name,
                    requested_amount, fee_amount, fee_percentage, net_amount, message,
                    block_number, gas_sponsored, sponsor_transaction_hash,
                    onchain_fee_amount, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.transaction_hash,
                record.sender_owner_reference,
                record.sender_display_name,
                record.sender_address,
                record.recipient_address,
                record.recipient_display_name,
                canonical_string(record.requested_amount),
                canonical_string(record.fee_amount),
                record.fee_percentage,
                canonical_string(record.net_amount),
                record.message,
                record.block_number,
                record.gas_sponsored,
                record.sponsor_transaction_hash,
                canonical_string(record.onchain_fee_amount) if record.onchain_fee_amount is not None else None,
                record.timestamp,
            ))
            self.conn.commit()
            logger.info(f"✓ Transfer recorded: {record.transaction_hash}")
            return True
        except sqlite3.IntegrityError:
            self.conn.rollback()
            logger.info(f"Transfer already recorded: {record.transaction_hash}")
            return False
        except sqlite3.Error as e:
            self._fail("recording transfer", e)

    def get_transfer(self, transaction_hash: str) -> Optional[TransferRecord]:
        row = self.conn.execute(
            "SELECT * FROM transfer_records WHERE transaction_hash = ?", (transaction_hash,)
        ).fetchone()
        return self._row_to_transfer(row) if row else None

    @staticmethod
    def _range_clause(since: Optional[datetime], until: Optional[datetime]) -> Tuple[str, list]:
        clause, params = "", []
        if since is not None:
            clause += " AND timestamp >= ?"
            params.append(_iso(since))
        if until is not None:
            clause += " AND timestamp < ?"
            params.append(_iso(until))
        return clause, params

    def _page(self, column: str, value: str, limit: int, offset: int,
              since: Optional[datetime], until: Optional[datetime]) -> List[TransferRecord]:
        clause, params = self._range_clause(since, until)
        rows = self.conn.execute(
            f"SELECT * FROM transfer_records WHERE {column} = ?{clause} "
            f"ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
            [value, *params, limit, offset],
        ).fetchall()
        return [self._row_to_transfer(row) for row in rows]

    def _count(self, column: str, value: str,
               since: Optional[datetime], until: Optional[datetime]) -> int:
        clause, params = self._range_clause(since, until)
        return self.conn.execute(
            f"SELECT COUNT(*) FROM transfer_records WHERE {column} = ?{clause}",
            [value, *params],
        ).fetchone()[0]

    def get_sent_transfers(self, owner_reference: str, limit: int = 5, offset: int = 0,
                           since: Optional[datetime] = None, until: Optional[datetime] = None) -> List[TransferRecord]:
        return self._page('sender_owner_reference', owner_reference, limit, offset, since, until)

    def count_sent_transfers(self, owner_reference: str, since: Optional[datetime] = None,
                             until: Optional[datetime] = None) -> int:
        return self._count('sender_owner_reference', owner_reference, since, until)

    def get_received_transfers(self, address: str, limit: int = 5, offset: int = 0,
                               since: Optional[datetime] = None, until: Optional[datetime] = None) -> List[TransferRecord]:
        return self._page('recipient_address', address.lower(), limit, offset, since, until)

    def count_received_transfers(self, address: str, since: Optional[datetime] = None,
                                 until: Optional[datetime] = None) -> int:
        return self._count('recipient_address', address.lower(), since, until)

    def get_transfers_by_date_range(self, since: Optional[datetime] = None,
                                    until: Optional[datetime] = None) -> List[TransferRecord]:
        clause, params = self._range_clause(since, until)
        rows = self.conn.execute(
            f"SELECT * FROM transfer_records WHERE 1 = 1{clause} ORDER BY timestamp DESC, id DESC",
            params,
        ).fetchall()
        return [self._row_to_transfer(row) for row in rows]

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed")
