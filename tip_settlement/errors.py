"""
Error taxonomy and boundary result type

Components raise TipError subclasses internally. Public entry points
(SettlementEngine.settle, TipService.*) convert them into a Result so nothing
raises through the caller boundary. Only the one-line user message travels in
the Result; library exception text stays in the operational log.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Machine-readable failure codes"""
    INVALID_AMOUNT = "INVALID_AMOUNT"
    AMOUNT_BELOW_MINIMUM = "AMOUNT_BELOW_MINIMUM"
    INSUFFICIENT_TOKEN_BALANCE = "INSUFFICIENT_TOKEN_BALANCE"
    INSUFFICIENT_GAS = "INSUFFICIENT_GAS"
    ADMIN_FUNDS_EXHAUSTED = "ADMIN_FUNDS_EXHAUSTED"
    APPROVAL_FAILED = "APPROVAL_FAILED"
    TRANSACTION_TIMEOUT = "TRANSACTION_TIMEOUT"
    CONTRACT_REVERTED = "CONTRACT_REVERTED"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    ADDRESS_NOT_FOUND = "ADDRESS_NOT_FOUND"
    DUPLICATE_MAPPING_OWNER_MISMATCH = "DUPLICATE_MAPPING_OWNER_MISMATCH"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INVALID_PRIVATE_KEY = "INVALID_PRIVATE_KEY"
    INVALID_IDENTIFIER = "INVALID_IDENTIFIER"
    MAPPING_NOT_FOUND = "MAPPING_NOT_FOUND"
    WALLET_NOT_FOUND = "WALLET_NOT_FOUND"
    WALLET_ALREADY_LINKED = "WALLET_ALREADY_LINKED"
    CHAIN_UNAVAILABLE = "CHAIN_UNAVAILABLE"
    STORAGE_ERROR = "STORAGE_ERROR"


# One actionable line per code, safe to show to members
USER_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.INVALID_AMOUNT: "The amount is not a valid number. Use only digits and one decimal point (e.g. 10.5).",
    ErrorCode.AMOUNT_BELOW_MINIMUM: "The minimum amount is 1.",
    ErrorCode.INSUFFICIENT_TOKEN_BALANCE: "Insufficient token balance for this transfer. Top up your wallet and try again.",
    ErrorCode.INSUFFICIENT_GAS: "Not enough gas currency to cover transaction fees. Please try again later.",
    ErrorCode.ADMIN_FUNDS_EXHAUSTED: "Gas sponsorship is temporarily unavailable. An operator has been notified.",
    ErrorCode.APPROVAL_FAILED: "Contract approval failed. Please try again.",
    ErrorCode.TRANSACTION_TIMEOUT: "The transaction is still pending. Check the explorer link before trying again.",
    ErrorCode.CONTRACT_REVERTED: "The contract rejected the transaction. Check the amount and your balance.",
    ErrorCode.TRANSFER_FAILED: "The transfer could not be submitted. Please try again.",
    ErrorCode.ADDRESS_NOT_FOUND: "No wallet address found for that recipient. Map an address or create a wallet first.",
    ErrorCode.DUPLICATE_MAPPING_OWNER_MISMATCH: "That identifier belongs to another member.",
    ErrorCode.INVALID_ADDRESS: "The address provided is not a valid wallet address.",
    ErrorCode.INVALID_PRIVATE_KEY: "The private key is invalid or does not match the address.",
    ErrorCode.INVALID_IDENTIFIER: "Use a member mention or a non-empty alias as the identifier.",
    ErrorCode.MAPPING_NOT_FOUND: "Mapping not found.",
    ErrorCode.WALLET_NOT_FOUND: "You need a wallet first. Create or link one to get started.",
    ErrorCode.WALLET_ALREADY_LINKED: "A wallet is already linked. Unlink it first.",
    ErrorCode.CHAIN_UNAVAILABLE: "The blockchain network is unreachable right now. Please try again later.",
    ErrorCode.STORAGE_ERROR: "The ledger is temporarily unavailable. Please try again later.",
}

# Not fixable by the member, needs an operator
OPERATIONAL_CODES = frozenset({
    ErrorCode.ADMIN_FUNDS_EXHAUSTED,
    ErrorCode.TRANSACTION_TIMEOUT,
    ErrorCode.CHAIN_UNAVAILABLE,
    ErrorCode.STORAGE_ERROR,
})


def is_operational(code: ErrorCode) -> bool:
    """True when the failure needs operator attention rather than member action"""
    return code in OPERATIONAL_CODES


class TipError(Exception):
    """
    Base error raised inside the settlement pipeline

    Args:
        code: Error code
        message: One-line user message (defaults to the code's standard text)
        details: Operational detail for logs only
        pending_tx_hash: Hash of a submitted but unconfirmed transaction
    """

    code: ErrorCode = ErrorCode.TRANSFER_FAILED

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[str] = None,
        pending_tx_hash: Optional[str] = None,
        code: Optional[ErrorCode] = None,
    ):
        if code is not None:
            self.code = code
        self.message = message or USER_MESSAGES[self.code]
        self.details = details
        self.pending_tx_hash = pending_tx_hash
        super().__init__(self.message)

    @property
    def operational(self) -> bool:
        return is_operational(self.code)


class InvalidAmountError(TipError):
    code = ErrorCode.INVALID_AMOUNT


class AmountBelowMinimumError(TipError):
    code = ErrorCode.AMOUNT_BELOW_MINIMUM


class InsufficientTokenBalanceError(TipError):
    code = ErrorCode.INSUFFICIENT_TOKEN_BALANCE


class InsufficientGasError(TipError):
    code = ErrorCode.INSUFFICIENT_GAS


class AdminFundsExhaustedError(TipError):
    code = ErrorCode.ADMIN_FUNDS_EXHAUSTED


class ApprovalFailedError(TipError):
    code = ErrorCode.APPROVAL_FAILED


class TransactionTimeoutError(TipError):
    code = ErrorCode.TRANSACTION_TIMEOUT


class ContractRevertedError(TipError):
    code = ErrorCode.CONTRACT_REVERTED


class TransferFailedError(TipError):
    code = ErrorCode.TRANSFER_FAILED


class AddressNotFoundError(TipError):
    code = ErrorCode.ADDRESS_NOT_FOUND


class ChainUnavailableError(TipError):
    code = ErrorCode.CHAIN_UNAVAILABLE


class StorageError(TipError):
    code = ErrorCode.STORAGE_ERROR


class DuplicateMappingOwnerMismatchError(TipError):
    code = ErrorCode.DUPLICATE_MAPPING_OWNER_MISMATCH


class InvalidAddressError(TipError):
    code = ErrorCode.INVALID_ADDRESS


class InvalidPrivateKeyError(TipError):
    code = ErrorCode.INVALID_PRIVATE_KEY


class InvalidIdentifierError(TipError):
    code = ErrorCode.INVALID_IDENTIFIER


class MappingNotFoundError(TipError):
    code = ErrorCode.MAPPING_NOT_FOUND


class WalletNotFoundError(TipError):
    code = ErrorCode.WALLET_NOT_FOUND


class WalletAlreadyLinkedError(TipError):
    code = ErrorCode.WALLET_ALREADY_LINKED


@dataclass
class Result:
    """Discriminated success/failure returned across the caller boundary"""
    success: bool
    data: Any = None
    code: Optional[ErrorCode] = None
    message: str = ""
    pending_tx_hash: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def operational(self) -> bool:
        return self.code is not None and is_operational(self.code)

    @classmethod
    def ok(cls, data: Any = None, message: str = "", **extra) -> "Result":
        return cls(success=True, data=data, message=message, extra=extra)

    @classmethod
    def fail(
        cls,
        code: ErrorCode,
        message: Optional[str] = None,
        pending_tx_hash: Optional[str] = None,
    ) -> "Result":
        return cls(
            success=False,
            code=code,
            message=message or USER_MESSAGES[code],
            pending_tx_hash=pending_tx_hash,
        )

    @classmethod
    def from_error(cls, error: TipError) -> "Result":
        return cls.fail(error.code, error.message, error.pending_tx_hash)

    def to_dict(self) -> Dict:
        return {
            'success': self.success,
            'code': self.code.value if self.code else None,
            'message': self.message,
            'pending_tx_hash': self.pending_tx_hash,
            'operational': self.operational,
        }
