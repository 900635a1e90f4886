# this file defines the database structure for the storefront
# it uses 10 tables to handle customers, the catalog, coupons, orders, reviews, the blog, carts and settings

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from sqlalchemy import event
from sqlalchemy.engine import Engine
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()

ORDER_STATUSES = ('pending', 'completed', 'failed', 'refunded')
PAYMENT_STATUSES = ('pending', 'completed', 'failed')
DISCOUNT_TYPES = ('percentage', 'fixed')
SETTING_TYPES = ('string', 'number', 'boolean', 'json')


def utcnow():
    # naive UTC, the same shape sqlite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_money(value):
    """Turn an incoming number into an exact decimal for a NUMERIC column."""
    if value is None:
        return None
    return Decimal(str(value))


def from_money(value):
    if value is None:
        return None
    return float(value)


def _iso(value):
    return value.isoformat() if value is not None else None


@event.listens_for(Engine, 'connect')
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # sqlite ignores foreign keys unless asked
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()


# table 1: users - customers and admins, used for login
class User(UserMixin, db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)  # stored as a secure hash
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(40))
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    orders = db.relationship('Order', backref='user', lazy=True)
    reviews = db.relationship('Review', backref='user', lazy=True)
    blog_posts = db.relationship('BlogPost', backref='author', lazy=True)
    cart_items = db.relationship('CartItem', backref='user', lazy=True)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        # the hash never leaves the server
        return {
            'id': self.id,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'phone': self.phone,
            'is_admin': self.is_admin,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<User {self.email}>'


# table 2: categories - groups products in the catalog
class Category(db.Model):
    __tablename__ = 'categories'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(200), unique=True, nullable=False)
    description = db.Column(db.Text)
    image_url = db.Column(db.String(500))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    products = db.relationship('Product', backref='category', lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'description': self.description,
            'image_url': self.image_url,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Category {self.slug}>'


# table 3: products - digital items, delivered by download url / license key
class Product(db.Model):
    __tablename__ = 'products'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(200), unique=True, nullable=False)
    description = db.Column(db.Text)
    short_description = db.Column(db.Text)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    discount_price = db.Column(db.Numeric(10, 2))  # sale price, wins over price when set
    category_id = db.Column(db.Integer, db.ForeignKey('categories.id'), nullable=False)
    image_url = db.Column(db.String(500))
    download_url = db.Column(db.String(500))
    license_key = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_featured = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    @property
    def unit_price(self):
        return self.discount_price if self.discount_price else self.price

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'description': self.description,
            'short_description': self.short_description,
            'price': from_money(self.price),
            'discount_price': from_money(self.discount_price),
            'category_id': self.category_id,
            'image_url': self.image_url,
            'download_url': self.download_url,
            'license_key': self.license_key,
            'is_active': self.is_active,
            'is_featured': self.is_featured,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Product {self.name}>'


# table 4: coupons - discount codes with an optional usage cap and expiry
class Coupon(db.Model):
    __tablename__ = 'coupons'
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), unique=True, nullable=False)
    discount_type = db.Column(db.Enum(*DISCOUNT_TYPES, name='discount_type'), nullable=False)
    discount_value = db.Column(db.Numeric(10, 2), nullable=False)
    minimum_amount = db.Column(db.Numeric(10, 2))
    usage_limit = db.Column(db.Integer)  # null means unlimited
    used_count = db.Column(db.Integer, default=0, nullable=False)
    expires_at = db.Column(db.DateTime)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    orders = db.relationship('Order', backref='coupon', lazy=True)

    def is_exhausted(self):
        return self.usage_limit is not None and self.used_count >= self.usage_limit

    def is_expired(self, now=None):
        return self.expires_at is not None and (now or utcnow()) > self.expires_at

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'discount_type': self.discount_type,
            'discount_value': from_money(self.discount_value),
            'minimum_amount': from_money(self.minimum_amount),
            'usage_limit': self.usage_limit,
            'used_count': self.used_count,
            'expires_at': _iso(self.expires_at),
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Coupon {self.code}>'


# table 5: orders - one checkout, amounts are computed by the caller
class Order(db.Model):
    __tablename__ = 'orders'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    order_number = db.Column(db.String(64), unique=True, nullable=False)
    status = db.Column(db.Enum(*ORDER_STATUSES, name='order_status'), default='pending', nullable=False)
    subtotal = db.Column(db.Numeric(10, 2), nullable=False)
    tax_amount = db.Column(db.Numeric(10, 2), default=Decimal('0'), nullable=False)
    discount_amount = db.Column(db.Numeric(10, 2), default=Decimal('0'), nullable=False)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    coupon_id = db.Column(db.Integer, db.ForeignKey('coupons.id'))
    payment_method = db.Column(db.String(50))
    payment_status = db.Column(db.Enum(*PAYMENT_STATUSES, name='payment_status'), default='pending', nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    items = db.relationship('OrderItem', backref='order', lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'order_number': self.order_number,
            'status': self.status,
            'subtotal': from_money(self.subtotal),
            'tax_amount': from_money(self.tax_amount),
            'discount_amount': from_money(self.discount_amount),
            'total_amount': from_money(self.total_amount),
            'coupon_id': self.coupon_id,
            'payment_method': self.payment_method,
            'payment_status': self.payment_status,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Order {self.order_number}>'


# table 6: order items - price is frozen at the time of the order
class OrderItem(db.Model):
    __tablename__ = 'order_items'
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    product = db.relationship('Product', backref=db.backref('order_items', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'order_id': self.order_id,
            'product_id': self.product_id,
            'quantity': self.quantity,
            'price': from_money(self.price),
            'created_at': _iso(self.created_at),
        }


# table 7: reviews - only buyers may review, admins approve before they show
class Review(db.Model):
    __tablename__ = 'reviews'
    __table_args__ = (db.UniqueConstraint('user_id', 'product_id'),)
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'), nullable=False)
    rating = db.Column(db.Integer, nullable=False)  # 1 to 5
    comment = db.Column(db.Text)
    is_approved = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    product = db.relationship('Product', backref=db.backref('reviews', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'product_id': self.product_id,
            'rating': self.rating,
            'comment': self.comment,
            'is_approved': self.is_approved,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


# table 8: blog posts
class BlogPost(db.Model):
    __tablename__ = 'blog_posts'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(255), unique=True, nullable=False)
    content = db.Column(db.Text, nullable=False)
    excerpt = db.Column(db.Text)
    featured_image = db.Column(db.String(500))
    author_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    is_published = db.Column(db.Boolean, default=False, nullable=False)
    published_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'slug': self.slug,
            'content': self.content,
            'excerpt': self.excerpt,
            'featured_image': self.featured_image,
            'author_id': self.author_id,
            'is_published': self.is_published,
            'published_at': _iso(self.published_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


# table 9: cart items - one row per (user, product), quantity adds up
class CartItem(db.Model):
    __tablename__ = 'cart_items'
    __table_args__ = (db.UniqueConstraint('user_id', 'product_id'),)
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    product = db.relationship('Product', backref=db.backref('cart_items', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'product_id': self.product_id,
            'quantity': self.quantity,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


# table 10: settings - site wide key/value pairs, value is always text
class Setting(db.Model):
    __tablename__ = 'settings'
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(120), unique=True, nullable=False)
    value = db.Column(db.Text, nullable=False)
    type = db.Column(db.Enum(*SETTING_TYPES, name='setting_type'), default='string', nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'key': self.key,
            'value': self.value,
            'type': self.type,
            'description': self.description,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Setting {self.key}>'
