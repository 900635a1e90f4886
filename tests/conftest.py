import os

# point the app at a private in-memory database before it is imported
os.environ['DATABASE_URL'] = 'sqlite://'

from decimal import Decimal

import pytest

from app import app as flask_app
from models import db, User, Category, Product, Coupon, Order, OrderItem


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def make(email='buyer@example.com', password='correct-horse', is_admin=False):
        user = User(email=email, first_name='Jane', last_name='Doe', phone='1234567890', is_admin=is_admin)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user
    return make


@pytest.fixture
def make_category(app):
    def make(slug='software', name='Software', is_active=True):
        category = Category(name=name, slug=slug, is_active=is_active)
        db.session.add(category)
        db.session.commit()
        return category
    return make


@pytest.fixture
def make_product(app, make_category):
    def make(slug='photo-editor', price='29.99', discount_price=None, category=None, **fields):
        category = category or Category.query.first() or make_category()
        product = Product(
            name=fields.pop('name', slug.replace('-', ' ').title()),
            slug=slug,
            price=Decimal(price),
            discount_price=Decimal(discount_price) if discount_price else None,
            category_id=category.id,
            **fields,
        )
        db.session.add(product)
        db.session.commit()
        return product
    return make


@pytest.fixture
def make_coupon(app):
    def make(code='SAVE10', discount_type='percentage', discount_value='10.00', **fields):
        coupon = Coupon(code=code, discount_type=discount_type, discount_value=Decimal(discount_value), **fields)
        db.session.add(coupon)
        db.session.commit()
        return coupon
    return make


@pytest.fixture
def make_order(app):
    """An order for `user` holding one line per product, with the given status."""
    def make(user, products, status='pending', total='29.99'):
        order = Order(
            user_id=user.id,
            order_number=f'ORD-TEST-{Order.query.count() + 1}',
            status=status,
            subtotal=Decimal(total),
            total_amount=Decimal(total),
        )
        db.session.add(order)
        db.session.flush()
        for product in products:
            db.session.add(OrderItem(order_id=order.id, product_id=product.id, quantity=1, price=product.price))
        db.session.commit()
        return order
    return make
