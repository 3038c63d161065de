from decimal import Decimal, Inexact

import pytest

from goodcoin_service.domain.models import (
    CoinPurchase,
    FailureReason,
    LedgerResult,
    PaymentCurrency,
    Post,
    TokenDonation,
    TransactionKind,
    TransactionStatus,
    VirtualDonation,
    add_amounts,
    format_amount,
    generate_id,
    utcnow,
)


def test_display_text_per_variant():
    now = utcnow()
    virtual = VirtualDonation("tx_1", "a", "b", Decimal("30.00"), "post_1", now)
    token = TokenDonation("tx_2", "a", "b", Decimal("5"), "post_1", now,
                          tx_hash="0x1", from_address="0xa", token_amount="5.5", token_symbol="GOOD")
    purchase = CoinPurchase("purchase_1", "a", Decimal("100"), Decimal("0.0010"),
                            PaymentCurrency.ETH, now)

    assert virtual.display_text() == "Sent 30 GOOD tokens"
    assert token.display_text() == "Sent 5.5 GOOD"
    assert purchase.display_text() == "Purchased 100 GOOD for 0.001 ETH"


def test_variants_carry_their_discriminant():
    now = utcnow()
    token = TokenDonation("tx_2", "a", "b", Decimal("5"), "p", now,
                          tx_hash="0x1", from_address="0xa", token_amount="5", token_symbol="GOOD",
                          status=TransactionStatus.PENDING)
    assert VirtualDonation("tx_1", "a", "b", Decimal("1"), "p", now).kind == TransactionKind.VIRTUAL
    assert token.kind == TransactionKind.TOKEN
    assert not token.is_confirmed


def test_format_amount():
    assert format_amount(Decimal("1E+2")) == "100"
    assert format_amount(Decimal("0.500")) == "0.5"
    assert format_amount(Decimal("99999999999.999999999999999999")) == "99999999999.999999999999999999"


def test_add_amounts_is_exact():
    assert add_amounts(Decimal("1e11"), Decimal("-1e-18")) == Decimal("99999999999.999999999999999999")
    assert add_amounts() == Decimal("0")
    with pytest.raises(Inexact):
        add_amounts(Decimal("1e59"), Decimal("1e-18"))


def test_generate_id_is_unique_and_prefixed():
    ids = {generate_id("post") for _ in range(100)}
    assert len(ids) == 100
    assert all(i.startswith("post_") for i in ids)


def test_ledger_result():
    assert LedgerResult.success("record").ok
    failed = LedgerResult.failure(FailureReason.SELF_DONATION)
    assert not failed.ok and failed.record is None
    assert failed.reason.value == "SelfDonation"


def test_post_snapshot():
    post = Post("post_1", "bob", "Hi", likes_count=3, comments_count=1, flag_count=2, created_at=utcnow())
    snap = post.snapshot()
    assert (snap.likes_count, snap.comments_count, snap.flag_count) == (3, 1, 2)
    assert post.is_owner("bob") and not post.is_owner("alice")
