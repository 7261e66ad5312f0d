import json
from decimal import Decimal

import pytest
from bson import ObjectId

import payments
from errors import InsufficientStock, InvalidTransition, PaymentVerificationFailed, ProductNotFound
from orders import cancel_order
from payments import compute_pricing, confirm_payment, create_checkout, handle_webhook, price_items
from schemas import CheckoutItem, CheckoutRequest, OrderStatus


def checkout_request(address, *items, cart_id=None):
    return CheckoutRequest(
        items=[CheckoutItem(product_id=pid, quantity=qty) for pid, qty in items],
        email="Jane@Example.com",
        shipping_address=address,
        cart_id=cart_id,
    )


async def test_cart_scenario_totals(db, add_product):
    a = add_product("Product A", price=10.00)
    b = add_product("Product B", price=25.00)

    items, pricing = await price_items(db, [CheckoutItem(product_id=a, quantity=2),
                                            CheckoutItem(product_id=b, quantity=1)])

    assert pricing.subtotal == Decimal("45.00")
    assert pricing.shipping == Decimal("4.99")
    assert pricing.tax == Decimal("0.00")
    assert pricing.total == Decimal("49.99")
    assert [i.line_total for i in items] == [Decimal("20.00"), Decimal("25.00")]


def test_free_shipping_only_above_threshold():
    assert compute_pricing(Decimal("100.00")).shipping == Decimal("4.99")
    over = compute_pricing(Decimal("100.01"))
    assert over.shipping == Decimal("0.00")
    assert over.total == Decimal("100.01")


def test_total_includes_vat(monkeypatch):
    monkeypatch.setattr(payments.settings, "VAT_RATE", Decimal("0.20"))
    pricing = compute_pricing(Decimal("45.00"))
    assert pricing.tax == Decimal("9.00")
    assert pricing.total == pricing.subtotal + pricing.shipping + pricing.tax


async def test_price_items_rejects_out_of_stock(db, add_product):
    pid = add_product(stock=1)
    with pytest.raises(InsufficientStock) as exc:
        await price_items(db, [CheckoutItem(product_id=pid, quantity=2)])
    assert exc.value.available == 1


async def test_price_items_rejects_unknown_and_inactive(db, add_product):
    hidden = add_product(is_active=False)
    with pytest.raises(ProductNotFound):
        await price_items(db, [CheckoutItem(product_id=hidden, quantity=1)])
    with pytest.raises(ProductNotFound):
        await price_items(db, [CheckoutItem(product_id="not-an-id", quantity=1)])


async def test_checkout_creates_pending_order_with_snapshot(db, raw_db, gateway, add_product, address, stock_of):
    pid = add_product(price=12.50, stock=5)
    raw_db["cart"].insert_one({"_id": "cart-1", "email": "jane@example.com", "items": []})

    result = await create_checkout(db, gateway, checkout_request(address, (pid, 2), cart_id="cart-1"))

    order = raw_db["order"].find_one({"_id": ObjectId(result["order_id"])})
    assert order["status"] == "pending_payment"
    assert order["email"] == "jane@example.com"
    assert order["pricing"]["total"] == 29.99
    assert gateway.intents[order["payment_intent_id"]]["amount"] == 2999
    assert result["client_secret"].startswith(order["payment_intent_id"])
    # stock is only taken once payment is confirmed
    assert stock_of(pid) == 5
    assert raw_db["cart"].find_one({"_id": "cart-1"})["converted"] is True

    raw_db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"price": 99.0}})
    order = raw_db["order"].find_one({"_id": ObjectId(result["order_id"])})
    assert order["items"][0]["unit_price"] == 12.5


async def test_checkout_flags_custom_artwork(db, raw_db, gateway, add_product, address):
    pid = add_product()
    request = CheckoutRequest(
        items=[CheckoutItem(product_id=pid, quantity=1, custom_artwork_url="https://cdn.example.com/logo.png")],
        email="jane@example.com",
        shipping_address=address,
    )
    result = await create_checkout(db, gateway, request)
    order = raw_db["order"].find_one({"_id": ObjectId(result["order_id"])})
    assert order["has_custom_artwork"] is True
    assert order["artwork_status"] == "submitted"


async def test_confirm_requires_settled_intent(db, raw_db, gateway, add_product, address, stock_of):
    pid = add_product(stock=5)
    result = await create_checkout(db, gateway, checkout_request(address, (pid, 3)))
    intent_id = raw_db["order"].find_one()["payment_intent_id"]

    with pytest.raises(PaymentVerificationFailed):
        await confirm_payment(db, gateway, intent_id)

    assert raw_db["order"].find_one({"_id": ObjectId(result["order_id"])})["status"] == "pending_payment"
    assert stock_of(pid) == 5


async def test_confirm_rejects_amount_mismatch(db, raw_db, gateway, add_product, address):
    pid = add_product(stock=5)
    await create_checkout(db, gateway, checkout_request(address, (pid, 1)))
    intent_id = raw_db["order"].find_one()["payment_intent_id"]
    gateway.succeed(intent_id, amount=100)

    with pytest.raises(PaymentVerificationFailed):
        await confirm_payment(db, gateway, intent_id)


async def test_confirm_unknown_intent(db, gateway):
    with pytest.raises(PaymentVerificationFailed):
        await confirm_payment(db, gateway, "pi_missing")


async def test_confirm_marks_paid_and_decrements_once(db, raw_db, gateway, add_product, address, stock_of, mail):
    pid = add_product(stock=5)
    result = await create_checkout(db, gateway, checkout_request(address, (pid, 3)))
    intent_id = raw_db["order"].find_one()["payment_intent_id"]
    gateway.succeed(intent_id)

    order = await confirm_payment(db, gateway, intent_id)
    again = await confirm_payment(db, gateway, intent_id)

    assert order["status"] == "paid"
    assert again["status"] == "paid"
    assert again["id"] == result["order_id"]
    assert stock_of(pid) == 2
    stored = raw_db["order"].find_one({"_id": ObjectId(result["order_id"])})
    assert stored["paid_at"] is not None
    assert stored["confirming"] is False
    confirmations = mail("order-confirmation")
    assert len(confirmations) == 1
    assert confirmations[0]["to"] == "jane@example.com"
    assert "Total: £34.99" in confirmations[0]["message"]["text"]


async def test_confirm_while_another_confirmation_holds_the_claim(db, raw_db, gateway, add_product, address,
                                                                  stock_of, mail):
    pid = add_product(stock=5)
    result = await create_checkout(db, gateway, checkout_request(address, (pid, 3)))
    intent_id = raw_db["order"].find_one()["payment_intent_id"]
    gateway.succeed(intent_id)
    # the webhook got there first and is still decrementing
    raw_db["order"].update_one({"_id": ObjectId(result["order_id"])}, {"$set": {"confirming": True}})

    order = await confirm_payment(db, gateway, intent_id)

    assert order["status"] == "pending_payment"
    assert order["confirming"] is True
    assert stock_of(pid) == 5
    assert mail("order-confirmation") == []


async def test_cancel_during_confirmation_is_refused(db, raw_db, gateway, add_product, address, stock_of,
                                                     monkeypatch):
    pid = add_product(stock=5)
    result = await create_checkout(db, gateway, checkout_request(address, (pid, 3)))
    intent_id = raw_db["order"].find_one()["payment_intent_id"]
    gateway.succeed(intent_id)
    real_decrement = payments.decrement_stock
    refused = []

    async def decrement_then_cancel(db, items, **kwargs):
        await real_decrement(db, items, **kwargs)
        try:
            await cancel_order(db, result["order_id"], "admin", gateway=gateway)
        except InvalidTransition as exc:
            refused.append(exc)

    monkeypatch.setattr(payments, "decrement_stock", decrement_then_cancel)

    order = await confirm_payment(db, gateway, intent_id)

    assert len(refused) == 1
    assert order["status"] == "paid"
    assert raw_db["order"].find_one()["status"] == "paid"
    assert stock_of(pid) == 2
    assert gateway.cancelled == []


async def test_failed_paid_transition_puts_stock_back(db, raw_db, gateway, add_product, address, stock_of,
                                                      monkeypatch):
    pid = add_product(stock=5)
    result = await create_checkout(db, gateway, checkout_request(address, (pid, 3)))
    intent_id = raw_db["order"].find_one()["payment_intent_id"]
    gateway.succeed(intent_id)

    async def lost_race(db, order_id, target, extra=None):
        raise InvalidTransition("cancelled", target.value)

    monkeypatch.setattr(payments, "transition", lost_race)

    with pytest.raises(InvalidTransition):
        await confirm_payment(db, gateway, intent_id)

    stored = raw_db["order"].find_one({"_id": ObjectId(result["order_id"])})
    assert stored["confirming"] is False
    assert stored["status"] == "pending_payment"
    assert stock_of(pid) == 5


async def test_payment_for_cancelled_order_is_refunded_once(db, raw_db, gateway, add_product, address, stock_of):
    pid = add_product(stock=4)
    result = await create_checkout(db, gateway, checkout_request(address, (pid, 1)))
    intent_id = raw_db["order"].find_one()["payment_intent_id"]
    await cancel_order(db, result["order_id"], "customer request")
    gateway.succeed(intent_id)
    payload = json.dumps({"type": "payment_intent.succeeded", "data": {"object": {"id": intent_id}}}).encode()

    first = await handle_webhook(db, gateway, payload, "valid-signature")
    second = await handle_webhook(db, gateway, payload, "valid-signature")

    assert first["handled"] is True
    assert first["status"] == OrderStatus.CANCELLED.value
    assert second["status"] == OrderStatus.CANCELLED.value
    assert gateway.refunds == [intent_id]
    stored = raw_db["order"].find_one()
    assert stored["status"] == "cancelled"
    assert stored["refund_id"] == f"re_{intent_id}"
    assert stored["refunding"] is False
    assert stock_of(pid) == 4


async def test_confirm_with_stock_gone_leaves_order_pending(db, raw_db, gateway, add_product, address, stock_of):
    pid = add_product(stock=2)
    result = await create_checkout(db, gateway, checkout_request(address, (pid, 2)))
    intent_id = raw_db["order"].find_one()["payment_intent_id"]
    gateway.succeed(intent_id)
    raw_db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"stock": 1}})

    with pytest.raises(InsufficientStock):
        await confirm_payment(db, gateway, intent_id)

    stored = raw_db["order"].find_one({"_id": ObjectId(result["order_id"])})
    assert stored["status"] == "pending_payment"
    assert stored["stock_conflict"] is True
    assert stored["confirming"] is False
    assert stock_of(pid) == 1


async def test_webhook_rejects_bad_signature(db, gateway):
    with pytest.raises(PaymentVerificationFailed):
        await handle_webhook(db, gateway, b"{}", "forged")


async def test_webhook_succeeded_confirms_order(db, raw_db, gateway, add_product, address, stock_of):
    pid = add_product(stock=4)
    await create_checkout(db, gateway, checkout_request(address, (pid, 1)))
    intent_id = raw_db["order"].find_one()["payment_intent_id"]
    gateway.succeed(intent_id)
    payload = json.dumps({"type": "payment_intent.succeeded", "data": {"object": {"id": intent_id}}}).encode()

    result = await handle_webhook(db, gateway, payload, "valid-signature")

    assert result["handled"] is True
    assert raw_db["order"].find_one()["status"] == "paid"
    assert stock_of(pid) == 3


async def test_webhook_payment_failed_is_recorded(db, raw_db, gateway, add_product, address):
    pid = add_product()
    await create_checkout(db, gateway, checkout_request(address, (pid, 1)))
    intent_id = raw_db["order"].find_one()["payment_intent_id"]
    payload = json.dumps({
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": intent_id, "last_payment_error": {"message": "Card declined"}}},
    }).encode()

    await handle_webhook(db, gateway, payload, "valid-signature")

    order = raw_db["order"].find_one()
    assert order["status"] == "pending_payment"
    assert order["last_payment_error"] == "Card declined"
