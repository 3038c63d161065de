from decimal import Decimal
import asyncio

import pytest

from goodcoin_service.domain.exceptions import InsufficientBalanceError
from goodcoin_service.domain.models import (
    FailureReason,
    TransactionKind,
    VirtualDonation,
    generate_id,
    utcnow,
)
from goodcoin_service.domain.repositories import TransferDirection


async def _state(accounts, post_repo, ledger_repo, post_id):
    return (
        await accounts.get_balance("alice"),
        await accounts.get_balance("bob"),
        (await post_repo.get_post(post_id)).donations_received,
        len(await ledger_repo.list_for_post(post_id)),
    )


@pytest.mark.asyncio
async def test_donation_moves_balance(ledger, accounts, post_repo, funded):
    post = funded["post"]
    await ledger.purchase_coins("bob", "1", "0.001", "ETH")

    result = await ledger.create_donation("alice", "bob", 30, post.id)

    assert result.ok
    donation = result.record
    assert donation.kind == TransactionKind.VIRTUAL
    assert donation.amount == Decimal("30")
    assert donation.id.startswith("tx_")
    assert await accounts.get_balance("alice") == Decimal("70")
    assert await accounts.get_balance("bob") == Decimal("81")
    assert (await post_repo.get_post(post.id)).donations_received == Decimal("30")


@pytest.mark.asyncio
async def test_donation_to_zero_balance_account(ledger, accounts, post_repo, posts):
    await accounts.get_or_create_account("a", "a", "A", balance=Decimal("0"))
    await accounts.get_or_create_account("b", "b", "B", balance=Decimal("0"))
    await ledger.purchase_coins("a", 100, "3", "USDC")
    post = await posts.create_post("b", "Kindness thread")

    result = await ledger.create_donation("a", "b", Decimal("30"), post.id)

    assert result.ok
    assert await accounts.get_balance("a") == Decimal("70")
    assert await accounts.get_balance("b") == Decimal("30")
    assert (await post_repo.get_post(post.id)).donations_received == Decimal("30")


@pytest.mark.asyncio
async def test_donation_conserves_coins(ledger, accounts, funded):
    before = await accounts.get_balance("alice") + await accounts.get_balance("bob")
    for amount in ("0.1", "0.2", "12.345"):
        assert (await ledger.create_donation("alice", "bob", amount, funded["post"].id)).ok
    after = await accounts.get_balance("alice") + await accounts.get_balance("bob")
    assert after == before
    assert await accounts.get_balance("bob") == Decimal("62.645")


@pytest.mark.asyncio
async def test_insufficient_balance_changes_nothing(ledger, accounts, post_repo, ledger_repo, posts):
    await accounts.get_or_create_account("alice", "alice", "Alice", balance=Decimal("10"))
    await accounts.get_or_create_account("bob", "bob", "Bob")
    post = await posts.create_post("bob", "Sunrise")
    before = await _state(accounts, post_repo, ledger_repo, post.id)

    result = await ledger.create_donation("alice", "bob", 30, post.id)

    assert not result.ok
    assert result.reason == FailureReason.INSUFFICIENT_BALANCE
    assert await _state(accounts, post_repo, ledger_repo, post.id) == before


@pytest.mark.asyncio
async def test_exact_balance_can_be_donated(ledger, accounts, funded):
    result = await ledger.create_donation("alice", "bob", "100", funded["post"].id)
    assert result.ok
    assert await accounts.get_balance("alice") == Decimal("0")


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, "abc", "NaN", "Infinity", None, True, "1e-19"])
async def test_invalid_amount(ledger, funded, amount):
    result = await ledger.create_donation("alice", "bob", amount, funded["post"].id)
    assert result.reason == FailureReason.INVALID_AMOUNT


@pytest.mark.asyncio
async def test_self_donation_rejected_regardless_of_balance(ledger, accounts, funded):
    for amount in (1, 1000):
        result = await ledger.create_donation("alice", "alice", amount, funded["post"].id)
        assert result.reason == FailureReason.SELF_DONATION
    assert await accounts.get_balance("alice") == Decimal("100")


@pytest.mark.asyncio
async def test_precondition_order(ledger, funded):
    post_id = funded["post"].id
    # Invalid amount wins over everything else
    assert (await ledger.create_donation("x", "x", 0, "nope")).reason == FailureReason.INVALID_AMOUNT
    assert (await ledger.create_donation("x", "x", 1, "nope")).reason == FailureReason.SELF_DONATION
    assert (await ledger.create_donation("x", "y", 1, "nope")).reason == FailureReason.PAYER_NOT_FOUND
    assert (await ledger.create_donation("alice", "y", 1, "nope")).reason == FailureReason.PAYEE_NOT_FOUND
    assert (await ledger.create_donation("alice", "bob", 1, "nope")).reason == FailureReason.POST_NOT_FOUND
    assert (await ledger.create_donation("alice", "bob", 500, post_id)).reason == \
        FailureReason.INSUFFICIENT_BALANCE


@pytest.mark.asyncio
async def test_failed_donations_leave_no_trace(ledger, accounts, post_repo, ledger_repo, producer,
                                              funded):
    post_id = funded["post"].id
    before = await _state(accounts, post_repo, ledger_repo, post_id)
    attempts = [
        ("alice", "bob", -1, post_id),
        ("alice", "alice", 5, post_id),
        ("ghost", "bob", 5, post_id),
        ("alice", "ghost", 5, post_id),
        ("alice", "bob", 5, "post_missing"),
        ("alice", "bob", 101, post_id),
    ]
    for args in attempts:
        assert not (await ledger.create_donation(*args)).ok

    assert await _state(accounts, post_repo, ledger_repo, post_id) == before
    assert await ledger.get_user_transactions("alice") == []
    assert producer.of_type("donation_created") == []


@pytest.mark.asyncio
async def test_store_rejection_maps_to_reason(ledger, ledger_repo, funded, monkeypatch):
    async def racing_apply(donation):
        raise InsufficientBalanceError(donation.from_id, Decimal("0"), donation.amount)

    monkeypatch.setattr(ledger_repo, "apply_donation", racing_apply)
    result = await ledger.create_donation("alice", "bob", 5, funded["post"].id)
    assert result.reason == FailureReason.INSUFFICIENT_BALANCE


@pytest.mark.asyncio
async def test_concurrent_donations_never_overdraw(ledger, accounts, funded):
    post_id = funded["post"].id
    results = await asyncio.gather(*[
        ledger.create_donation("alice", "bob", 30, post_id) for _ in range(5)
    ])

    assert sum(1 for r in results if r.ok) == 3
    assert all(r.reason == FailureReason.INSUFFICIENT_BALANCE for r in results if not r.ok)
    assert await accounts.get_balance("alice") == Decimal("10")
    assert await accounts.get_balance("bob") == Decimal("140")


@pytest.mark.asyncio
async def test_concurrent_store_transfers_are_atomic(ledger_repo, account_repo, funded):
    post_id = funded["post"].id

    async def transfer():
        donation = VirtualDonation(generate_id("tx"), "alice", "bob", Decimal("30"), post_id, utcnow())
        try:
            await ledger_repo.apply_donation(donation)
            return True
        except InsufficientBalanceError:
            return False

    outcomes = await asyncio.gather(*[transfer() for _ in range(4)])

    assert outcomes.count(True) == 3
    assert (await account_repo.get_account("alice")).balance == Decimal("10")


@pytest.mark.asyncio
async def test_transaction_history_and_totals(ledger, funded):
    post_id = funded["post"].id
    await ledger.create_donation("alice", "bob", 10, post_id)
    await ledger.create_donation("alice", "bob", 5, post_id)

    sent = await ledger.get_user_transactions("alice", TransferDirection.SENT)
    received = await ledger.get_user_transactions("alice", "received")

    assert sorted(d.amount for d in sent) == [Decimal("5"), Decimal("10")]
    assert received == []
    assert len(await ledger.get_user_transactions("bob")) == 2
    assert len(await ledger.get_post_transactions(post_id)) == 2
    assert await ledger.get_total_donated_by_user("alice") == Decimal("15")
    assert await ledger.get_total_received_by_user("bob") == Decimal("15")
    assert await ledger.get_total_received_by_user("alice") == Decimal("0")


@pytest.mark.asyncio
async def test_donation_event_published(ledger, producer, funded):
    result = await ledger.create_donation("alice", "bob", 1, funded["post"].id)
    assert producer.of_type("donation_created") == [result.record]


@pytest.mark.asyncio
async def test_tiny_donation_from_large_balance_is_exact(ledger, accounts, posts):
    await accounts.get_or_create_account("alice", "alice", "Alice", balance=Decimal("1e11"))
    await accounts.get_or_create_account("bob", "bob", "Bob", balance=Decimal("0"))
    post = await posts.create_post("bob", "Every coin counts")
    before = await accounts.get_balance("alice") + await accounts.get_balance("bob")

    result = await ledger.create_donation("alice", "bob", "0.000000000000000001", post.id)

    assert result.ok
    assert await accounts.get_balance("alice") == Decimal("99999999999.999999999999999999")
    assert await accounts.get_balance("bob") == Decimal("0.000000000000000001")
    assert await accounts.get_balance("alice") + await accounts.get_balance("bob") == before


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["1e20", "100000000000000000000", "123456789012345678901.5"])
async def test_amount_too_large_for_storage(ledger, funded, amount):
    result = await ledger.create_donation("alice", "bob", amount, funded["post"].id)
    assert result.reason == FailureReason.INVALID_AMOUNT


@pytest.mark.asyncio
async def test_unrepresentable_balance_change_is_rejected(ledger, accounts, post_repo, ledger_repo,
                                                          posts):
    # 1e59 + 1e-18 needs more significant digits than money arithmetic carries
    await accounts.get_or_create_account("alice", "alice", "Alice", balance=Decimal("1e59"))
    await accounts.get_or_create_account("bob", "bob", "Bob")
    post = await posts.create_post("bob", "Big spender")
    before = await _state(accounts, post_repo, ledger_repo, post.id)

    result = await ledger.create_donation("alice", "bob", "0.000000000000000001", post.id)

    assert result.reason == FailureReason.INVALID_AMOUNT
    assert await _state(accounts, post_repo, ledger_repo, post.id) == before
