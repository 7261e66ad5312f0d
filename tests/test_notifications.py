from decimal import Decimal

import pytest

from notifications import (
    LineData,
    LowStockAlertData,
    OrderConfirmationData,
    ShippingNotificationData,
    Template,
    TEMPLATES,
    dispatch,
    render,
    render_text,
)


def confirmation(**overrides):
    data = dict(
        order_id="ord-1",
        customer_name="Jane Smith",
        items=[
            LineData(name="Product A", quantity=2, unit_price=Decimal("10"), line_total=Decimal("20")),
            LineData(name="Product B", quantity=1, unit_price=Decimal("25"), line_total=Decimal("25")),
        ],
        subtotal=Decimal("45"),
        shipping=Decimal("4.99"),
        tax=Decimal("0"),
        total=Decimal("49.99"),
        order_url="https://shop.example.com/order-confirmation.html?order=ord-1",
    )
    data.update(overrides)
    return OrderConfirmationData(**data)


def test_every_template_is_registered():
    assert set(TEMPLATES) == set(Template)


def test_render_substitutes_fields():
    assert render_text("Hi {{name}}!", {"name": "Jane"}) == "Hi Jane!"
    assert render_text("{{order.id}}", {"order": {"id": "abc"}}) == "abc"


def test_unknown_placeholders_are_left_verbatim():
    assert render_text("Hi {{nickname}}", {"name": "Jane"}) == "Hi {{nickname}}"
    assert render_text("{{#each lines}}x{{/each}}", {}) == "{{#each lines}}x{{/each}}"


def test_each_block_repeats_per_item():
    text = render_text("{{#each items}}[{{name}}]{{/each}} for {{who}}",
                       {"who": "Jane", "items": [{"name": "a"}, {"name": "b"}]})
    assert text == "[a][b] for Jane"


def test_item_values_are_not_treated_as_placeholders():
    text = render_text("{{#each items}}{{name}};{{/each}} {{cart_url}}",
                       {"cart_url": "https://shop.example.com/cart", "items": [{"name": "{{cart_url}}"}]})
    assert text == "{{cart_url}}; https://shop.example.com/cart"


def test_each_block_is_bounded():
    items = [{"n": i} for i in range(10)]
    assert render_text("{{#each items}}{{n}},{{/each}}", {"items": items}, max_repeat=3) == "0,1,2,"


def test_money_renders_with_two_places():
    subject, text = render(Template.ORDER_CONFIRMATION, confirmation())
    assert subject == "Order Confirmation - ord-1"
    assert "2 x Product A @ £10.00 = £20.00" in text
    assert "1 x Product B @ £25.00 = £25.00" in text
    assert "Subtotal: £45.00" in text
    assert "Total: £49.99" in text


def test_render_rejects_wrong_data_model():
    data = ShippingNotificationData(order_id="ord-1", customer_name="Jane", tracking_number="RM1")
    with pytest.raises(TypeError):
        render(Template.ORDER_CONFIRMATION, data)


async def test_dispatch_queues_mail_item(db, mail):
    data = LowStockAlertData(product_id="p1", product_name="Hoodie", stock=9, threshold=10)

    mail_id = await dispatch(db, Template.LOW_STOCK_ALERT, "info@customisemeuk.com", data)

    queued = mail()
    assert len(queued) == 1
    assert str(queued[0]["_id"]) == mail_id
    assert queued[0]["to"] == "info@customisemeuk.com"
    assert queued[0]["message"]["subject"] == "Low stock: Hoodie"
    assert queued[0]["template"] == {"name": "low-stock-alert", "data": data.model_dump(mode="json")}


async def test_dispatch_stores_json_safe_data(db, mail):
    await dispatch(db, Template.ORDER_CONFIRMATION, "jane@example.com", confirmation())
    stored = mail()[0]["template"]["data"]
    assert stored["total"] == "49.99"
    assert stored["items"][0]["name"] == "Product A"


async def test_dispatch_failure_returns_none(db, mail):
    data = ShippingNotificationData(order_id="ord-1", customer_name="Jane", tracking_number="RM1")
    assert await dispatch(db, Template.LOW_STOCK_ALERT, "x@example.com", data) is None
    assert mail() == []
