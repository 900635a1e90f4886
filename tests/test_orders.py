from datetime import datetime

import pytest

import handlers
from models import db, Coupon, Order, OrderItem
from schemas import CreateOrderInput


@pytest.fixture
def buyer(make_user):
    return make_user()


@pytest.fixture
def product(make_product):
    return make_product(price='29.99')


def order_input(user, product, **overrides):
    fields = dict(
        user_id=user.id,
        subtotal=29.99,
        tax_amount=2.40,
        discount_amount=0,
        total_amount=32.39,
        payment_method='card',
        items=[{'product_id': product.id, 'quantity': 1, 'price': 29.99}],
    )
    fields.update(overrides)
    return CreateOrderInput(**fields)


def test_create_order_writes_order_and_items(app, buyer, product, make_product):
    second = make_product(slug='font-bundle', price='5.00')
    result = handlers.create_order(order_input(buyer, product, items=[
        {'product_id': product.id, 'quantity': 2, 'price': 29.99},
        {'product_id': second.id, 'quantity': 1, 'price': 5.00},
    ]))

    assert result['status'] == 'pending'
    assert result['payment_status'] == 'pending'
    assert result['order_number'].startswith('ORD-')
    assert result['subtotal'] == 29.99
    assert result['tax_amount'] == 2.4
    assert result['total_amount'] == 32.39

    items = OrderItem.query.filter_by(order_id=result['id']).order_by(OrderItem.id).all()
    assert [(i.product_id, i.quantity, float(i.price)) for i in items] == [
        (product.id, 2, 29.99), (second.id, 1, 5.0)]


def test_create_order_defaults_optional_amounts(app, buyer, product):
    result = handlers.create_order(CreateOrderInput(
        user_id=buyer.id, subtotal=29.99, total_amount=29.99,
        items=[{'product_id': product.id, 'quantity': 1, 'price': 29.99}]))
    assert result['tax_amount'] == 0
    assert result['discount_amount'] == 0
    assert result['coupon_id'] is None
    assert result['payment_method'] is None


def test_order_numbers_differ(app, buyer, product):
    first = handlers.create_order(order_input(buyer, product))
    second = handlers.create_order(order_input(buyer, product))
    assert first['order_number'] != second['order_number']


def test_create_order_redeems_coupon(app, buyer, product, make_coupon):
    coupon = make_coupon(usage_limit=10)
    result = handlers.create_order(order_input(buyer, product, coupon_id=coupon.id))

    assert result['coupon_id'] == coupon.id
    db.session.expire_all()
    assert db.session.get(Coupon, coupon.id).used_count == 1


@pytest.mark.parametrize('coupon_fields,message', [
    ({'is_active': False}, 'Coupon is not active'),
    ({'expires_at': datetime(2020, 1, 1)}, 'Coupon has expired'),
    ({'usage_limit': 2, 'used_count': 2}, 'Coupon usage limit exceeded'),
])
def test_create_order_rejects_unusable_coupon(app, buyer, product, make_coupon, coupon_fields, message):
    coupon = make_coupon(**coupon_fields)
    with pytest.raises(handlers.StoreError, match=message):
        handlers.create_order(order_input(buyer, product, coupon_id=coupon.id))
    assert Order.query.count() == 0


def test_create_order_rejects_missing_records(app, buyer, product):
    with pytest.raises(handlers.NotFound, match='User not found'):
        handlers.create_order(order_input(buyer, product, user_id=999))
    with pytest.raises(handlers.NotFound, match='Product with ID 999 not found'):
        handlers.create_order(order_input(buyer, product, items=[{'product_id': 999, 'quantity': 1, 'price': 1}]))
    with pytest.raises(handlers.NotFound, match='Coupon not found'):
        handlers.create_order(order_input(buyer, product, coupon_id=999))
    assert Order.query.count() == 0


def test_create_order_rejects_inactive_product(app, buyer, make_product):
    retired = make_product(slug='retired', name='Retired Theme', is_active=False)
    with pytest.raises(handlers.StoreError, match='Product Retired Theme is not active'):
        handlers.create_order(order_input(buyer, retired))


def test_coupon_increment_never_passes_limit(app, buyer, product, make_coupon):
    coupon = make_coupon(usage_limit=1)
    handlers.create_order(order_input(buyer, product, coupon_id=coupon.id))

    # another order that already passed the checks loses the race at the increment
    with pytest.raises(handlers.StoreError, match='Coupon usage limit exceeded'):
        handlers._place_order(order_input(buyer, product, coupon_id=coupon.id))
    db.session.rollback()

    db.session.expire_all()
    assert db.session.get(Coupon, coupon.id).used_count == 1
    assert Order.query.count() == 1
    assert OrderItem.query.count() == 1


def test_get_orders_and_by_user(app, buyer, product, make_user, make_order):
    other = make_user(email='other@example.com')
    make_order(buyer, [product])
    make_order(other, [product])
    make_order(buyer, [product])

    assert len(handlers.get_orders()) == 3
    mine = handlers.get_orders_by_user(buyer.id)
    assert len(mine) == 2
    assert all(o['user_id'] == buyer.id for o in mine)
    assert isinstance(mine[0]['total_amount'], float)


def test_get_order_by_id_and_items(app, buyer, product, make_order):
    order = make_order(buyer, [product])
    assert handlers.get_order_by_id(order.id)['order_number'] == order.order_number
    assert handlers.get_order_by_id(12345) is None

    items = handlers.get_order_items(order.id)
    assert [i['product_id'] for i in items] == [product.id]
    with pytest.raises(handlers.NotFound):
        handlers.get_order_items(12345)


@pytest.mark.parametrize('status,payment_status', [
    ('completed', 'completed'),
    ('failed', 'failed'),
    ('refunded', 'pending'),
    ('pending', 'pending'),
])
def test_update_order_status_sets_payment_status(app, buyer, product, make_order, status, payment_status):
    order = make_order(buyer, [product])
    result = handlers.update_order_status(order.id, status)
    assert result['status'] == status
    assert result['payment_status'] == payment_status


def test_update_order_status_not_found(app):
    with pytest.raises(handlers.NotFound, match='Order with ID 3 not found'):
        handlers.update_order_status(3, 'completed')
