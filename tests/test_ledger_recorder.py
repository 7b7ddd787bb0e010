"""Ledger writes, history, leaderboard and totals"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tip_settlement.fee_calculator import compute_fee
from tip_settlement.identifier_resolver import IdentifierResolver
from tip_settlement.ledger_recorder import LedgerRecorder
from tip_settlement.settlement_engine import SettlementOutcome

from tests.conftest import RECIPIENT_ADDRESS, SENDER_ADDRESS, SenderAccount, tokens


def make_outcome(tx_number: int, amount: str = "10", completed_at: datetime = None, sponsor_hash: str = None):
    tx_hash = "0x" + format(tx_number, '064x')
    return SettlementOutcome(
        transaction_hash=tx_hash,
        block_number=1000 + tx_number,
        gas_used=52000,
        sender_address=SENDER_ADDRESS,
        recipient_address=RECIPIENT_ADDRESS,
        requested_amount=Decimal(amount),
        requested_base_units=tokens(amount),
        fee_quote=compute_fee(amount),
        onchain_fee_amount=None,
        gas_sponsored=sponsor_hash is not None,
        sponsor_tx_hash=sponsor_hash,
        tx_url=f"https://sepolia.etherscan.io/tx/{tx_hash}",
        completed_at=completed_at,
    )


@pytest.fixture
def resolver(db):
    return IdentifierResolver(db)


@pytest.fixture
def recorder(db, resolver):
    return LedgerRecorder(db, resolver)


def test_record_denormalizes_names(recorder, resolver, sender):
    resolver.create_or_update_mapping("dave", "alias", RECIPIENT_ADDRESS, actor="100")

    record, already_recorded = recorder.record_transfer(make_outcome(1, "10.5"), sender, RECIPIENT_ADDRESS, "gm")

    assert not already_recorded
    assert record.sender_display_name == "sender"
    assert record.sender_address == SENDER_ADDRESS
    assert record.recipient_display_name == "dave"
    assert record.fee_amount == Decimal("0.63")
    assert record.net_amount == Decimal("9.87")
    assert record.message == "gm"

    stored = recorder.get_record(record.transaction_hash)
    assert stored == record


def test_unmapped_recipient_gets_truncated_name(recorder, sender):
    record, _ = recorder.record_transfer(make_outcome(1), sender, RECIPIENT_ADDRESS)
    assert record.recipient_display_name == f"{RECIPIENT_ADDRESS[:6]}…{RECIPIENT_ADDRESS[-4:]}"


def test_duplicate_hash_is_idempotent(recorder, db, sender):
    outcome = make_outcome(7, sponsor_hash="0x" + "f" * 64)

    first, first_dup = recorder.record_transfer(outcome, sender, RECIPIENT_ADDRESS)
    second, second_dup = recorder.record_transfer(outcome, sender, RECIPIENT_ADDRESS, "retry")

    assert (first_dup, second_dup) == (False, True)
    assert second == first
    assert second.gas_sponsored
    assert db.count_sent_transfers(sender.owner_reference) == 1


def test_history_pagination(recorder, sender):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for n in range(1, 8):
        recorder.record_transfer(make_outcome(n, completed_at=base + timedelta(minutes=n)), sender, RECIPIENT_ADDRESS)

    page_one = recorder.get_user_history("100", SENDER_ADDRESS, page=1, limit=5)
    page_two = recorder.get_user_history("100", SENDER_ADDRESS, page=2, limit=5)

    assert page_one['sent_total'] == 7
    assert page_one['total_pages'] == 2
    assert [r.block_number for r in page_one['sent']] == [1007, 1006, 1005, 1004, 1003]
    assert [r.block_number for r in page_two['sent']] == [1002, 1001]
    assert page_one['received'] == []


def test_history_received_and_date_range(recorder, sender):
    base = datetime(2026, 3, 1, tzinfo=timezone.utc)
    recorder.record_transfer(make_outcome(1, completed_at=base), sender, RECIPIENT_ADDRESS)
    recorder.record_transfer(make_outcome(2, completed_at=base + timedelta(days=2)), sender, RECIPIENT_ADDRESS)

    history = recorder.get_user_history("200", RECIPIENT_ADDRESS)
    assert history['received_total'] == 2
    assert history['sent_total'] == 0

    recent = recorder.get_user_history("200", RECIPIENT_ADDRESS, since=base + timedelta(days=1))
    assert [r.block_number for r in recent['received']] == [1002]


def test_leaderboard_orders_by_total(recorder):
    alice = SenderAccount(owner_reference="1", display_name="alice")
    bob = SenderAccount(owner_reference="2", display_name="bob")

    recorder.record_transfer(make_outcome(1, "10"), alice, RECIPIENT_ADDRESS)
    recorder.record_transfer(make_outcome(2, "10"), alice, RECIPIENT_ADDRESS)
    recorder.record_transfer(make_outcome(3, "50"), bob, RECIPIENT_ADDRESS)

    board = recorder.get_leaderboard()

    assert [(e['rank'], e['display_name'], e['total_sent'], e['tip_count']) for e in board['entries']] == [
        (1, "bob", Decimal("50"), 1),
        (2, "alice", Decimal("20"), 2),
    ]
    assert board['total_pages'] == 1

    second_page = recorder.get_leaderboard(page=2, limit=1)
    assert second_page['entries'][0]['rank'] == 2
    assert second_page['total_pages'] == 2


def test_statistics(recorder, sender):
    recorder.record_transfer(make_outcome(1, "10"), sender, RECIPIENT_ADDRESS)
    recorder.record_transfer(make_outcome(2, "100", sponsor_hash="0x" + "e" * 64), sender, RECIPIENT_ADDRESS)

    stats = recorder.get_statistics()

    assert stats['total_transfers'] == 2
    assert stats['total_volume'] == Decimal("110")
    assert stats['total_fees'] == Decimal("1.6")
    assert stats['total_net'] == Decimal("108.4")
    assert stats['sponsored_transfers'] == 1
    assert stats['unique_senders'] == 1
