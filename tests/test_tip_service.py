"""End-to-end tip flows through the service facade"""

from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

from tip_settlement.errors import ErrorCode, StorageError
from tip_settlement.tip_service import TipService

from tests.conftest import RECIPIENT_ADDRESS, SENDER_ADDRESS, SENDER_KEY, eth, tokens


@pytest.fixture
def service(tip_config, chain, db):
    return TipService(tip_config, chain, db)


@pytest_asyncio.fixture
async def linked(service, chain):
    result = await service.link_wallet("100", "alice", SENDER_ADDRESS, SENDER_KEY)
    assert result.success, result.message
    chain.fund(SENDER_ADDRESS, native=eth("0.05"), token=tokens(100))
    return service


@pytest.mark.asyncio
async def test_send_tip_to_alias_records_ledger_entry(linked, chain):
    await linked.map_identifier("100", "bob", "alias", RECIPIENT_ADDRESS)

    result = await linked.send_tip("<@100>", "Bob", "10,5", message="thanks")

    assert result.success, result.message
    assert result.extra['recorded']
    assert not result.extra['already_recorded']
    record = result.extra['record']
    assert record.transaction_hash == result.data.transaction_hash
    assert record.recipient_display_name == "bob"
    assert record.sender_display_name == "alice"
    assert record.message == "thanks"
    assert result.data.tx_url in result.message

    history = await linked.get_history("100")
    assert history.data['sent_total'] == 1


@pytest.mark.asyncio
async def test_send_tip_without_wallet(service, chain):
    result = await service.send_tip("999", RECIPIENT_ADDRESS, "5")

    assert result.code == ErrorCode.WALLET_NOT_FOUND
    assert chain.sent == []


@pytest.mark.asyncio
async def test_send_tip_unknown_recipient(linked, chain):
    result = await linked.send_tip("100", "<@424242>", "5")

    assert result.code == ErrorCode.ADDRESS_NOT_FOUND
    assert chain.sent == []


@pytest.mark.asyncio
async def test_send_tip_timeout_is_not_recorded(linked, chain, db):
    chain.timeout_kinds.add('transfer')

    result = await linked.send_tip("100", RECIPIENT_ADDRESS, "10")

    assert result.code == ErrorCode.TRANSACTION_TIMEOUT
    assert result.pending_tx_hash
    assert db.get_transfer(result.pending_tx_hash) is None
    assert db.count_sent_transfers("100") == 0


@pytest.mark.asyncio
async def test_send_tip_survives_ledger_failure(linked, chain):
    linked.recorder.record_transfer = Mock(side_effect=StorageError(details="disk full"))

    result = await linked.send_tip("100", RECIPIENT_ADDRESS, "10")

    assert result.success
    assert result.extra['recorded'] is False
    assert len(chain.sent_of('transfer')) == 1


@pytest.mark.asyncio
async def test_activity_update_failure_keeps_recorded_tip(linked, db):
    linked.accounts.touch = Mock(side_effect=StorageError(details="database is locked"))

    result = await linked.send_tip("100", RECIPIENT_ADDRESS, "10")

    assert result.success
    assert result.extra['recorded'] is True
    assert result.message.startswith("Tip sent: ")
    assert db.get_transfer(result.data.transaction_hash) is not None


@pytest.mark.asyncio
async def test_record_transfer_is_idempotent(linked):
    settled = await linked.settle(linked.accounts.get_account("100"), RECIPIENT_ADDRESS, "20")
    assert settled.success

    account = linked.accounts.get_account("100")
    first = await linked.record_transfer(settled.data, account, RECIPIENT_ADDRESS)
    second = await linked.record_transfer(settled.data, account, RECIPIENT_ADDRESS)

    assert first.extra['already_recorded'] is False
    assert second.extra['already_recorded'] is True
    assert second.data.transaction_hash == first.data.transaction_hash


@pytest.mark.asyncio
async def test_owner_mapping_only_for_self(service):
    result = await service.map_identifier("100", "<@200>", "owner", RECIPIENT_ADDRESS)
    assert result.code == ErrorCode.DUPLICATE_MAPPING_OWNER_MISMATCH

    result = await service.map_identifier("100", "<@100>", "owner", RECIPIENT_ADDRESS, display_name="alice")
    assert result.success
    resolved = await service.resolve_address("<@!100>")
    assert resolved.data == RECIPIENT_ADDRESS


@pytest.mark.asyncio
async def test_alias_repoint_by_other_member_is_rejected(service):
    created = await service.map_identifier("100", "shop", "alias", RECIPIENT_ADDRESS)
    assert created.success and not created.extra['is_update']

    hijack = await service.map_identifier("200", "SHOP", "alias", SENDER_ADDRESS)
    assert hijack.code == ErrorCode.DUPLICATE_MAPPING_OWNER_MISMATCH
    assert (await service.resolve_address("shop")).data == RECIPIENT_ADDRESS

    repoint = await service.map_identifier("100", "shop", "alias", SENDER_ADDRESS)
    assert repoint.success and repoint.extra['is_update']


@pytest.mark.asyncio
async def test_unmap_authorization(service):
    await service.map_identifier("100", "shop", "alias", RECIPIENT_ADDRESS)

    denied = await service.unmap_identifier("200", "shop", "alias")
    assert denied.code == ErrorCode.DUPLICATE_MAPPING_OWNER_MISMATCH

    removed = await service.unmap_identifier("100", "shop", "alias")
    assert removed.success

    missing = await service.unmap_identifier("100", "shop", "alias")
    assert missing.code == ErrorCode.MAPPING_NOT_FOUND


@pytest.mark.asyncio
async def test_invalid_mapping_inputs(service):
    bad_address = await service.map_identifier("100", "shop", "alias", "0xnope")
    assert bad_address.code == ErrorCode.INVALID_ADDRESS

    bad_kind = await service.create_or_update_mapping("shop", "nickname", RECIPIENT_ADDRESS, "100")
    assert bad_kind.code == ErrorCode.INVALID_IDENTIFIER

    not_found = await service.remove_mapping("ghost", "alias")
    assert not_found.code == ErrorCode.MAPPING_NOT_FOUND


@pytest.mark.asyncio
async def test_list_mappings(linked):
    await linked.map_identifier("100", "shop", "alias", RECIPIENT_ADDRESS)

    result = await linked.list_mappings("100")

    assert sorted((m.identifier, m.identifier_kind) for m in result.data) == [("100", "owner"), ("shop", "alias")]


def test_compute_fee(service):
    ok = service.compute_fee("10,5")
    assert ok.success
    assert ok.data.fee_amount == Decimal("0.63")

    low = service.compute_fee("0.5")
    assert low.code == ErrorCode.AMOUNT_BELOW_MINIMUM
    assert low.message == "The minimum amount is 1"

    bad = service.compute_fee("abc")
    assert bad.code == ErrorCode.INVALID_AMOUNT

    assert service.get_fee_tiers()[0]['percentage'] == 10


@pytest.mark.asyncio
async def test_create_wallet_returns_key_once(service):
    result = await service.create_wallet("300", "carol")

    assert result.success
    assert result.extra['signing_key'].startswith("0x")
    assert 'signing_key' not in result.data
    assert result.extra['address_url'].endswith(result.data['wallet_address'])

    again = await service.create_wallet("300", "carol")
    assert again.code == ErrorCode.WALLET_ALREADY_LINKED

    account = await service.get_account("300")
    assert 'signing_key' not in account.data


@pytest.mark.asyncio
async def test_get_balance(linked):
    result = await linked.get_balance("100")

    assert result.data['token_balance'] == "100"
    assert result.data['native_balance'] == "0.05"
    assert result.data['token_symbol'] == "RLUSD"


@pytest.mark.asyncio
async def test_get_balance_without_wallet(service):
    result = await service.get_balance("404")
    assert result.code == ErrorCode.WALLET_NOT_FOUND


@pytest.mark.asyncio
async def test_leaderboard_and_statistics(linked):
    await linked.send_tip("100", RECIPIENT_ADDRESS, "10")
    await linked.send_tip("100", RECIPIENT_ADDRESS, "25")

    board = await linked.get_leaderboard()
    assert board.data['entries'][0]['total_sent'] == Decimal("35")

    stats = await linked.get_statistics()
    assert stats.data['total_transfers'] == 2


@pytest.mark.asyncio
async def test_chain_failure_becomes_result(service, chain):
    await service.link_wallet("100", "alice", SENDER_ADDRESS, SENDER_KEY)
    chain.get_token_balance = AsyncMock(side_effect=ConnectionError("rpc down"))

    result = await service.get_balance("100")

    assert result.code == ErrorCode.CHAIN_UNAVAILABLE
    assert result.operational
    assert "rpc down" not in result.message


@pytest.mark.asyncio
async def test_collected_fees_and_close(service, chain, db):
    chain.collected_fees = tokens("1.5")

    result = await service.get_collected_fees()
    assert result.data == "1.5"

    await service.close()
    assert chain.closed
    assert db.conn is None
