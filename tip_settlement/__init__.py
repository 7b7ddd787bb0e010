"""
Tip Settlement

Custodial stablecoin tipping for chat communities: members hold RLUSD wallets
and tip each other through a fee-collecting paymaster contract.

Components:
- identifier_resolver: Mentions and aliases -> wallet addresses, and back to names
- fee_calculator: Tiered fee quotes (10% down to 1%)
- gas_sponsor: Native gas top-ups from the admin account
- settlement_engine: Approve-then-transfer pipeline with bounded confirmation
- ledger_recorder: Append-only transfer ledger, history and leaderboard
- accounts: Custodial wallet create / link / unlink
- tip_service: Result-returning facade for the chat layer

Settlement Steps:
1. Amount Normalization - "10,5" and friends become a Decimal
2. Fee Quote - Minimum amount and tier
3. Gas Check - Sponsored top-up when below threshold
4. Token Balance - Checked before the sender spends gas
5. Allowance - Standing approval of the paymaster
6. Transfer Gas - One more, larger top-up if needed
7. Transfer - transferRLUSD with a 60s confirmation window
8. Ledger - Recorded once per transaction hash
"""

from .accounts import AccountService
from .amounts import TokenAmount, format_units, normalize_amount, parse_units
from .chain_client import ChainClient, TxReceipt, classify_send_error
from .config import (
    ChainConfig,
    GasSponsorshipConfig,
    LoggingConfig,
    SettlementConfig,
    StorageConfig,
    TipConfig,
    configure_logging,
    load_config,
)
from .errors import ErrorCode, Result, TipError, is_operational
from .explorer import address_url, parse_tx_url, tx_url
from .fee_calculator import FEE_TIERS, FeeQuote, compute_fee, estimate_fee, get_fee_tiers
from .gas_sponsor import GasSponsor, GasSponsorship
from .identifier_resolver import IdentifierResolver, format_address, is_valid_address
from .ledger_db import Account, IdentifierMapping, LedgerDatabase, TransferRecord
from .ledger_recorder import LedgerRecorder
from .settlement_engine import SettlementEngine, SettlementOutcome
from .tip_service import TipService

__all__ = [
    # Facade
    'TipService',

    # Settlement
    'SettlementEngine',
    'SettlementOutcome',
    'GasSponsor',
    'GasSponsorship',
    'ChainClient',
    'TxReceipt',
    'classify_send_error',

    # Fees and amounts
    'FEE_TIERS',
    'FeeQuote',
    'compute_fee',
    'estimate_fee',
    'get_fee_tiers',
    'TokenAmount',
    'normalize_amount',
    'format_units',
    'parse_units',

    # Identifiers and accounts
    'IdentifierResolver',
    'format_address',
    'is_valid_address',
    'AccountService',

    # Ledger
    'LedgerDatabase',
    'LedgerRecorder',
    'Account',
    'IdentifierMapping',
    'TransferRecord',

    # Errors
    'ErrorCode',
    'Result',
    'TipError',
    'is_operational',

    # Config
    'TipConfig',
    'ChainConfig',
    'GasSponsorshipConfig',
    'SettlementConfig',
    'StorageConfig',
    'LoggingConfig',
    'load_config',
    'configure_logging',

    # Explorer links
    'tx_url',
    'address_url',
    'parse_tx_url',
]

__version__ = '1.0.0'
