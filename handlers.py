# handlers.py - the business operations behind every procedure in app.py
# each handler checks its preconditions, writes, commits and maps rows with to_dict()
# a failing handler rolls the session back, logs and re-raises

import json
import logging
import math
import secrets
import string
import time
from datetime import timezone
from decimal import Decimal, ROUND_HALF_UP
from functools import wraps

from flask import current_app
from sqlalchemy import or_, update

from models import (db, User, Category, Product, Coupon, Order, OrderItem, Review,
                    BlogPost, CartItem, Setting, utcnow, to_money, from_money)
from schemas import CreateOrderInput, OrderItemInput

logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.digits + string.ascii_uppercase
CENT = Decimal('0.01')


class StoreError(Exception):
    """A business rule refused the request. The message is shown to the caller."""


class NotFound(StoreError):
    pass


class AuthError(StoreError):
    pass


def logged(label):
    """Roll back, log under `label` and re-raise whatever the handler throws."""
    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except StoreError as e:
                db.session.rollback()
                logger.warning('%s: %s', label, e)
                raise
            except Exception as e:
                db.session.rollback()
                logger.error('%s: %s', label, e)
                raise
        return wrapper
    return deco


def _cents(value):
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _require_user(user_id, message=None):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound(message or f'User with id {user_id} not found')
    return user


def _apply_changes(row, changes):
    for field, value in changes.items():
        setattr(row, field, value)
    row.updated_at = utcnow()


# users and login

@logged('User creation failed')
def create_user(data):
    user = User(
        email=data.email,
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone,
        is_admin=bool(data.is_admin),
    )
    user.set_password(data.password)
    db.session.add(user)
    db.session.commit()
    return user.to_dict()


@logged('Login failed')
def login(data):
    """Return the User row for valid credentials; the caller starts the session."""
    user = User.query.filter_by(email=data.email).first()
    # same message for both cases, the caller must not learn which emails exist
    if user is None or not user.check_password(data.password):
        raise AuthError('Invalid credentials')
    return user


# categories

@logged('Failed to fetch categories')
def get_categories():
    categories = Category.query.filter_by(is_active=True).order_by(Category.name.asc()).all()
    return [c.to_dict() for c in categories]


@logged('Category creation failed')
def create_category(data):
    category = Category(
        name=data.name,
        slug=data.slug,
        description=data.description,
        image_url=data.image_url,
        is_active=data.is_active if data.is_active is not None else True,
    )
    db.session.add(category)
    db.session.commit()
    return category.to_dict()


@logged('Category update failed')
def update_category(data):
    category = db.session.get(Category, data.id)
    if category is None:
        raise NotFound(f'Category with ID {data.id} not found')
    _apply_changes(category, data.model_dump(exclude_unset=True, exclude={'id'}))
    db.session.commit()
    return category.to_dict()


# products

@logged('Failed to fetch products')
def get_products():
    products = Product.query.filter_by(is_active=True).order_by(Product.created_at.desc(), Product.id.desc()).all()
    return [p.to_dict() for p in products]


@logged('Failed to fetch products by category')
def get_products_by_category(category_id):
    products = (Product.query.filter_by(category_id=category_id)
                .order_by(Product.created_at.desc(), Product.id.desc()).all())
    return [p.to_dict() for p in products]


@logged('Failed to fetch featured products')
def get_featured_products():
    products = (Product.query.filter_by(is_featured=True)
                .order_by(Product.created_at.desc(), Product.id.desc()).all())
    return [p.to_dict() for p in products]


@logged('Failed to fetch product by slug')
def get_product_by_slug(slug):
    product = Product.query.filter_by(slug=slug).first()
    return product.to_dict() if product else None


@logged('Product creation failed')
def create_product(data):
    if db.session.get(Category, data.category_id) is None:
        raise NotFound(f'Category with id {data.category_id} does not exist')

    product = Product(
        name=data.name,
        slug=data.slug,
        description=data.description,
        short_description=data.short_description,
        price=to_money(data.price),
        discount_price=to_money(data.discount_price),
        category_id=data.category_id,
        image_url=data.image_url,
        download_url=data.download_url,
        license_key=data.license_key,
        is_active=data.is_active if data.is_active is not None else True,
        is_featured=data.is_featured if data.is_featured is not None else False,
    )
    db.session.add(product)
    db.session.commit()
    return product.to_dict()


@logged('Product update failed')
def update_product(data):
    product = db.session.get(Product, data.id)
    if product is None:
        raise NotFound(f'Product with id {data.id} not found')

    changes = data.model_dump(exclude_unset=True, exclude={'id'})
    if 'category_id' in changes and db.session.get(Category, changes['category_id']) is None:
        raise NotFound(f'Category with id {changes["category_id"]} not found')
    for field in ('price', 'discount_price'):
        if field in changes:
            changes[field] = to_money(changes[field])

    _apply_changes(product, changes)
    db.session.commit()
    return product.to_dict()


@logged('Failed to compute product rating')
def get_product_rating(product_id):
    """Average over approved reviews only; nothing is stored on the product."""
    if db.session.get(Product, product_id) is None:
        raise NotFound('Product not found')
    average, count = (db.session.query(db.func.avg(Review.rating), db.func.count(Review.id))
                      .filter(Review.product_id == product_id, Review.is_approved.is_(True))
                      .one())
    return {
        'product_id': product_id,
        'average_rating': round(float(average), 2) if average is not None else 0.0,
        'review_count': count,
    }


# coupons

@logged('Failed to fetch coupons')
def get_coupons():
    coupons = Coupon.query.order_by(Coupon.created_at.desc(), Coupon.id.desc()).all()
    return [c.to_dict() for c in coupons]


def _find_usable_coupon(code):
    now = utcnow()
    coupon = (Coupon.query
              .filter(Coupon.code == code, Coupon.is_active.is_(True))
              .filter(or_(Coupon.expires_at.is_(None), Coupon.expires_at > now))
              .first())
    if coupon is None or coupon.is_exhausted():
        return None
    return coupon


@logged('Failed to validate coupon')
def validate_coupon(code):
    """The coupon if `code` can be redeemed right now, otherwise None."""
    coupon = _find_usable_coupon(code)
    return coupon.to_dict() if coupon else None


@logged('Coupon creation failed')
def create_coupon(data):
    expires_at = data.expires_at
    if expires_at is not None and expires_at.tzinfo is not None:
        # stored naive, in UTC
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)

    coupon = Coupon(
        code=data.code,
        discount_type=data.discount_type,
        discount_value=to_money(data.discount_value),
        minimum_amount=to_money(data.minimum_amount),
        usage_limit=data.usage_limit,
        used_count=0,
        expires_at=expires_at,
        is_active=data.is_active if data.is_active is not None else True,
    )
    db.session.add(coupon)
    db.session.commit()
    return coupon.to_dict()


# orders

def generate_order_number():
    suffix = ''.join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(9))
    return f'ORD-{int(time.time() * 1000)}-{suffix}'


def _check_order(data):
    _require_user(data.user_id, 'User not found')

    for item in data.items:
        product = db.session.get(Product, item.product_id)
        if product is None:
            raise NotFound(f'Product with ID {item.product_id} not found')
        if not product.is_active:
            raise StoreError(f'Product {product.name} is not active')

    if data.coupon_id is not None:
        coupon = db.session.get(Coupon, data.coupon_id)
        if coupon is None:
            raise NotFound('Coupon not found')
        if not coupon.is_active:
            raise StoreError('Coupon is not active')
        if coupon.is_expired():
            raise StoreError('Coupon has expired')
        if coupon.is_exhausted():
            raise StoreError('Coupon usage limit exceeded')


def _redeem_coupon(coupon_id):
    # check and increment in one statement so two orders cannot both take the last use
    result = db.session.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id)
        .where(or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit))
        .values(used_count=Coupon.used_count + 1, updated_at=utcnow())
    )
    if result.rowcount == 0:
        raise StoreError('Coupon usage limit exceeded')


def _place_order(data):
    """Write the order, its items and the coupon redemption. The caller commits."""
    order = Order(
        user_id=data.user_id,
        order_number=generate_order_number(),
        status='pending',
        subtotal=to_money(data.subtotal),
        tax_amount=to_money(data.tax_amount or 0),
        discount_amount=to_money(data.discount_amount or 0),
        total_amount=to_money(data.total_amount),
        coupon_id=data.coupon_id,
        payment_method=data.payment_method,
        payment_status='pending',
    )
    db.session.add(order)
    db.session.flush()

    for item in data.items:
        db.session.add(OrderItem(
            order_id=order.id,
            product_id=item.product_id,
            quantity=item.quantity,
            price=to_money(item.price),
        ))

    if data.coupon_id is not None:
        _redeem_coupon(data.coupon_id)
    return order


@logged('Order creation failed')
def create_order(data):
    _check_order(data)
    order = _place_order(data)
    db.session.commit()
    logger.info('Order %s placed for user %s', order.order_number, order.user_id)
    return order.to_dict()


@logged('Failed to fetch orders')
def get_orders():
    orders = Order.query.order_by(Order.created_at.desc(), Order.id.desc()).all()
    return [o.to_dict() for o in orders]


@logged('Failed to fetch orders for user')
def get_orders_by_user(user_id):
    orders = (Order.query.filter_by(user_id=user_id)
              .order_by(Order.created_at.desc(), Order.id.desc()).all())
    return [o.to_dict() for o in orders]


@logged('Failed to fetch order by ID')
def get_order_by_id(order_id):
    order = db.session.get(Order, order_id)
    return order.to_dict() if order else None


@logged('Failed to fetch order items')
def get_order_items(order_id):
    if db.session.get(Order, order_id) is None:
        raise NotFound(f'Order with ID {order_id} not found')
    items = OrderItem.query.filter_by(order_id=order_id).order_by(OrderItem.id.asc()).all()
    return [i.to_dict() for i in items]


@logged('Order status update failed')
def update_order_status(order_id, status):
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound(f'Order with ID {order_id} not found')

    # refunded has no payment counterpart, it falls back to pending
    payment_status = 'pending'
    if status == 'completed':
        payment_status = 'completed'
    elif status == 'failed':
        payment_status = 'failed'

    _apply_changes(order, {'status': status, 'payment_status': payment_status})
    db.session.commit()
    logger.info('Order %s moved to %s', order.order_number, status)
    return order.to_dict()


# cart

@logged('Failed to fetch cart items')
def get_cart_items(user_id):
    items = CartItem.query.filter_by(user_id=user_id).order_by(CartItem.id.asc()).all()
    return [i.to_dict() for i in items]


@logged('Failed to calculate cart total')
def get_cart_total(user_id):
    items = CartItem.query.filter_by(user_id=user_id).all()
    total = sum((item.product.unit_price * item.quantity for item in items), Decimal('0'))
    return float(total)


@logged('Add to cart failed')
def add_to_cart(data):
    _require_user(data.user_id)
    if db.session.get(Product, data.product_id) is None:
        raise NotFound(f'Product with id {data.product_id} not found')

    quantity = data.quantity or 1
    item = CartItem.query.filter_by(user_id=data.user_id, product_id=data.product_id).first()
    if item:
        _apply_changes(item, {'quantity': item.quantity + quantity})
    else:
        item = CartItem(user_id=data.user_id, product_id=data.product_id, quantity=quantity)
        db.session.add(item)
    db.session.commit()
    return item.to_dict()


@logged('Remove from cart failed')
def remove_from_cart(user_id, product_id):
    _require_user(user_id)
    deleted = CartItem.query.filter_by(user_id=user_id, product_id=product_id).delete()
    db.session.commit()
    return deleted > 0


@logged('Clear cart failed')
def clear_cart(user_id):
    _require_user(user_id)
    CartItem.query.filter_by(user_id=user_id).delete()
    db.session.commit()
    return True


# checkout

def _tax_rate():
    setting = Setting.query.filter_by(key='tax_rate').first()
    if setting is not None and setting.type == 'number':
        rate = Decimal(setting.value)
        if rate.is_finite():
            return rate
    return Decimal(str(current_app.config.get('TAX_RATE', 0.08)))


def _build_quote(user_id, coupon_code=None):
    _require_user(user_id, 'User not found')
    items = CartItem.query.filter_by(user_id=user_id).order_by(CartItem.id.asc()).all()
    if not items:
        raise StoreError('Cart is empty')

    lines = [(item.product_id, item.quantity, item.product.unit_price) for item in items]
    subtotal = sum((price * quantity for _, quantity, price in lines), Decimal('0'))

    coupon = None
    discount = Decimal('0')
    if coupon_code:
        coupon = _find_usable_coupon(coupon_code)
        if coupon is None:
            raise StoreError('Invalid coupon code')
        if coupon.minimum_amount is not None and subtotal < coupon.minimum_amount:
            raise StoreError(f'Coupon {coupon.code} requires a minimum order of {coupon.minimum_amount}')
        if coupon.discount_type == 'percentage':
            discount = min(subtotal * coupon.discount_value / 100, subtotal)
        else:
            discount = min(coupon.discount_value, subtotal)
    discount = _cents(discount)

    tax = _cents((subtotal - discount) * _tax_rate())
    return {
        'items': lines,
        'subtotal': _cents(subtotal),
        'discount_amount': discount,
        'tax_amount': tax,
        'total_amount': _cents(subtotal) - discount + tax,
        'coupon_id': coupon.id if coupon else None,
    }


@logged('Checkout quote failed')
def quote_checkout(user_id, coupon_code=None):
    quote = _build_quote(user_id, coupon_code)
    return {
        'items': [{'product_id': p, 'quantity': q, 'price': from_money(price)} for p, q, price in quote['items']],
        'subtotal': from_money(quote['subtotal']),
        'discount_amount': from_money(quote['discount_amount']),
        'tax_amount': from_money(quote['tax_amount']),
        'total_amount': from_money(quote['total_amount']),
        'coupon_id': quote['coupon_id'],
    }


@logged('Checkout failed')
def checkout(data):
    """Turn the user's cart into an order and empty the cart in one transaction."""
    quote = _build_quote(data.user_id, data.coupon_code)
    order_input = CreateOrderInput(
        user_id=data.user_id,
        subtotal=float(quote['subtotal']),
        tax_amount=float(quote['tax_amount']),
        discount_amount=float(quote['discount_amount']),
        total_amount=float(quote['total_amount']),
        coupon_id=quote['coupon_id'],
        payment_method=data.payment_method,
        items=[OrderItemInput(product_id=p, quantity=q, price=float(price)) for p, q, price in quote['items']],
    )
    _check_order(order_input)
    order = _place_order(order_input)
    CartItem.query.filter_by(user_id=data.user_id).delete()
    db.session.commit()
    logger.info('Checkout of user %s produced order %s', data.user_id, order.order_number)
    return order.to_dict()


# reviews

@logged('Failed to fetch reviews')
def get_reviews():
    return [r.to_dict() for r in Review.query.order_by(Review.id.asc()).all()]


@logged('Failed to fetch reviews by product')
def get_reviews_by_product(product_id):
    # only approved reviews are public
    reviews = (Review.query.filter_by(product_id=product_id, is_approved=True)
               .order_by(Review.created_at.desc(), Review.id.desc()).all())
    return [r.to_dict() for r in reviews]


@logged('Failed to fetch pending reviews')
def get_pending_reviews():
    reviews = Review.query.filter_by(is_approved=False).order_by(Review.id.asc()).all()
    return [r.to_dict() for r in reviews]


@logged('Review creation failed')
def create_review(data):
    _require_user(data.user_id, 'User not found')
    if db.session.get(Product, data.product_id) is None:
        raise NotFound('Product not found')

    purchased = (db.session.query(OrderItem.id)
                 .join(Order, OrderItem.order_id == Order.id)
                 .filter(Order.user_id == data.user_id,
                         OrderItem.product_id == data.product_id,
                         Order.status == 'completed')
                 .first())
    if purchased is None:
        raise StoreError('User has not purchased this product')

    if Review.query.filter_by(user_id=data.user_id, product_id=data.product_id).first():
        raise StoreError('User has already reviewed this product')

    review = Review(
        user_id=data.user_id,
        product_id=data.product_id,
        rating=data.rating,
        comment=data.comment,
        is_approved=False,  # waits for moderation
    )
    db.session.add(review)
    db.session.commit()
    return review.to_dict()


@logged('Review update failed')
def update_review(data):
    review = db.session.get(Review, data.id)
    if review is None:
        raise NotFound(f'Review with id {data.id} not found')
    _apply_changes(review, {'is_approved': data.is_approved})
    db.session.commit()
    logger.info('Review %s approval set to %s', review.id, review.is_approved)
    return review.to_dict()


# blog

@logged('Failed to fetch published blog posts')
def get_blog_posts():
    posts = (BlogPost.query
             .filter(BlogPost.is_published.is_(True), BlogPost.published_at.isnot(None))
             .order_by(BlogPost.published_at.desc(), BlogPost.id.desc())
             .all())
    return [p.to_dict() for p in posts]


@logged('Failed to fetch blog post by slug')
def get_blog_post_by_slug(slug):
    post = (BlogPost.query
            .filter(BlogPost.slug == slug, BlogPost.is_published.is_(True), BlogPost.published_at.isnot(None))
            .first())
    return post.to_dict() if post else None


@logged('Failed to fetch all blog posts for admin')
def get_all_blog_posts_for_admin():
    posts = BlogPost.query.order_by(BlogPost.created_at.desc(), BlogPost.id.desc()).all()
    return [p.to_dict() for p in posts]


@logged('Blog post creation failed')
def create_blog_post(data):
    _require_user(data.author_id, f'Author with id {data.author_id} not found')
    is_published = bool(data.is_published)
    post = BlogPost(
        title=data.title,
        slug=data.slug,
        content=data.content,
        excerpt=data.excerpt,
        featured_image=data.featured_image,
        author_id=data.author_id,
        is_published=is_published,
        published_at=utcnow() if is_published else None,
    )
    db.session.add(post)
    db.session.commit()
    return post.to_dict()


# dashboard

@logged('Dashboard stats fetch failed')
def get_dashboard_stats():
    revenue = (db.session.query(db.func.sum(Order.total_amount))
               .filter(Order.status == 'completed').scalar())
    return {
        'total_categories': Category.query.count(),
        'total_products': Product.query.count(),
        'total_customers': User.query.filter_by(is_admin=False).count(),
        'total_orders': Order.query.count(),
        'total_revenue': float(revenue) if revenue is not None else 0.0,
        'pending_orders': Order.query.filter_by(status='pending').count(),
        'completed_orders': Order.query.filter_by(status='completed').count(),
    }


# settings

def _check_setting_value(value, setting_type):
    if setting_type == 'number':
        try:
            number = float(value)
        except ValueError:
            raise StoreError(f'Invalid number value: {value}')
        if not math.isfinite(number):
            raise StoreError(f'Invalid number value: {value}')
    elif setting_type == 'boolean':
        if value not in ('true', 'false'):
            raise StoreError(f"Invalid boolean value: {value}. Must be 'true' or 'false'")
    elif setting_type == 'json':
        try:
            json.loads(value)
        except ValueError:
            raise StoreError(f'Invalid JSON value: {value}')
    elif setting_type != 'string':
        raise StoreError(f'Unknown setting type: {setting_type}')


@logged('Failed to fetch settings')
def get_settings():
    return [s.to_dict() for s in Setting.query.order_by(Setting.key.asc()).all()]


@logged('Failed to fetch setting by key')
def get_setting_by_key(key):
    setting = Setting.query.filter_by(key=key).first()
    return setting.to_dict() if setting else None


@logged('Setting update failed')
def update_setting(data):
    setting = Setting.query.filter_by(key=data.key).first()
    if setting is None:
        raise NotFound(f"Setting with key '{data.key}' not found")
    _check_setting_value(data.value, setting.type)
    _apply_changes(setting, {'value': data.value})
    db.session.commit()
    return setting.to_dict()


DEFAULT_SETTINGS = [
    ('site_name', 'Digital Storefront', 'string', 'Shown in the page header'),
    ('currency', 'USD', 'string', 'ISO code used for all prices'),
    ('tax_rate', '0.08', 'number', 'Tax applied at checkout after discounts'),
    ('maintenance_mode', 'false', 'boolean', 'Hide the storefront from customers'),
]


@logged('Seeding default data failed')
def seed_defaults():
    """Create the admin account and default settings if they are missing."""
    email = current_app.config['ADMIN_EMAIL']
    if not User.query.filter_by(email=email).first():
        admin = User(email=email, first_name='Store', last_name='Admin', is_admin=True)
        admin.set_password(current_app.config['ADMIN_PASSWORD'])
        db.session.add(admin)

    for key, value, setting_type, description in DEFAULT_SETTINGS:
        if not Setting.query.filter_by(key=key).first():
            db.session.add(Setting(key=key, value=value, type=setting_type, description=description))
    db.session.commit()
