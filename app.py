# app.py - exposes every storefront operation as a JSON procedure
# run this file starting the server: python app.py
# seed the admin account and default settings: flask --app app init-db

import json
import logging
import os
from datetime import datetime, timezone

import click
from flask import Flask, request, jsonify
from flask_login import LoginManager, login_user, logout_user, login_required, current_user
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

import handlers
from models import db, User
from schemas import (CreateUserInput, LoginInput, CreateCategoryInput, UpdateCategoryInput,
                     CreateProductInput, UpdateProductInput, CreateCouponInput, CreateOrderInput,
                     UpdateOrderStatusInput, AddToCartInput, CheckoutInput, CreateReviewInput,
                     UpdateReviewInput, CreateBlogPostInput, UpdateSettingInput)

app = Flask(__name__)
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///storefront.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'storefront-dev-key')
app.config['TAX_RATE'] = float(os.environ.get('TAX_RATE', '0.08'))
app.config['ADMIN_EMAIL'] = os.environ.get('ADMIN_EMAIL', 'admin@example.com')
app.config['ADMIN_PASSWORD'] = os.environ.get('ADMIN_PASSWORD', 'change-me-now')

db.init_app(app)

# login manager setup, sessions ride on the flask cookie
login_manager = LoginManager()
login_manager.init_app(app)


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Authentication required'}), 401


# setup database tables
with app.app_context():
    db.create_all()


def parse(schema, **extra):
    """Validate the JSON body (plus path values) against a schema model."""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    payload.update(extra)
    return schema.model_validate(payload)


def found_or_404(result, message):
    if result is None:
        return jsonify({'error': message}), 404
    return jsonify(result)


# error handling - every failure comes back as {"error": message}
@app.errorhandler(ValidationError)
def handle_validation_error(e):
    app.logger.info('Rejected input on %s: %s', request.path, e.error_count())
    return jsonify({'error': 'Invalid input', 'details': json.loads(e.json(include_url=False))}), 400


@app.errorhandler(handlers.StoreError)
def handle_store_error(e):
    status = 400
    if isinstance(e, handlers.NotFound):
        status = 404
    elif isinstance(e, handlers.AuthError):
        status = 401
    return jsonify({'error': str(e)}), status


@app.errorhandler(IntegrityError)
def handle_integrity_error(e):
    db.session.rollback()
    app.logger.warning('Integrity conflict on %s: %s', request.path, e.orig)
    return jsonify({'error': f'Conflicts with an existing record: {e.orig}'}), 409


@app.route('/api/healthcheck')
def healthcheck():
    now = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
    return jsonify({'status': 'ok', 'timestamp': now})


# users and login
@app.route('/api/users', methods=['POST'])
def create_user():
    return jsonify(handlers.create_user(parse(CreateUserInput))), 201


@app.route('/api/login', methods=['POST'])
def login():
    user = handlers.login(parse(LoginInput))
    login_user(user)
    return jsonify(user.to_dict())


@app.route('/api/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Logged out'})


@app.route('/api/me')
@login_required
def me():
    return jsonify(current_user.to_dict())


# categories
@app.route('/api/categories', methods=['GET'])
def get_categories():
    return jsonify(handlers.get_categories())


@app.route('/api/categories', methods=['POST'])
def create_category():
    return jsonify(handlers.create_category(parse(CreateCategoryInput))), 201


@app.route('/api/categories/<int:id>', methods=['PATCH'])
def update_category(id):
    return jsonify(handlers.update_category(parse(UpdateCategoryInput, id=id)))


@app.route('/api/categories/<int:id>/products')
def get_products_by_category(id):
    return jsonify(handlers.get_products_by_category(id))


# products
@app.route('/api/products', methods=['GET'])
def get_products():
    return jsonify(handlers.get_products())


@app.route('/api/products', methods=['POST'])
def create_product():
    return jsonify(handlers.create_product(parse(CreateProductInput))), 201


@app.route('/api/products/featured')
def get_featured_products():
    return jsonify(handlers.get_featured_products())


@app.route('/api/products/slug/<slug>')
def get_product_by_slug(slug):
    return found_or_404(handlers.get_product_by_slug(slug), 'Product not found')


@app.route('/api/products/<int:id>', methods=['PATCH'])
def update_product(id):
    return jsonify(handlers.update_product(parse(UpdateProductInput, id=id)))


@app.route('/api/products/<int:id>/rating')
def get_product_rating(id):
    return jsonify(handlers.get_product_rating(id))


@app.route('/api/products/<int:id>/reviews')
def get_reviews_by_product(id):
    return jsonify(handlers.get_reviews_by_product(id))


# coupons
@app.route('/api/coupons', methods=['GET'])
def get_coupons():
    return jsonify(handlers.get_coupons())


@app.route('/api/coupons', methods=['POST'])
def create_coupon():
    return jsonify(handlers.create_coupon(parse(CreateCouponInput))), 201


@app.route('/api/coupons/validate')
def validate_coupon():
    code = request.args.get('code')
    if not code:
        return jsonify({'error': 'code is required'}), 400
    # null means the code cannot be used
    return jsonify(handlers.validate_coupon(code))


# orders
@app.route('/api/orders', methods=['GET'])
def get_orders():
    return jsonify(handlers.get_orders())


@app.route('/api/orders', methods=['POST'])
def create_order():
    return jsonify(handlers.create_order(parse(CreateOrderInput))), 201


@app.route('/api/orders/<int:id>')
def get_order_by_id(id):
    return found_or_404(handlers.get_order_by_id(id), f'Order with ID {id} not found')


@app.route('/api/orders/<int:id>/items')
def get_order_items(id):
    return jsonify(handlers.get_order_items(id))


@app.route('/api/orders/<int:id>/status', methods=['POST'])
def update_order_status(id):
    data = parse(UpdateOrderStatusInput, order_id=id)
    return jsonify(handlers.update_order_status(data.order_id, data.status))


@app.route('/api/users/<int:user_id>/orders')
def get_orders_by_user(user_id):
    return jsonify(handlers.get_orders_by_user(user_id))


# cart and checkout
@app.route('/api/users/<int:user_id>/cart', methods=['GET'])
def get_cart_items(user_id):
    return jsonify(handlers.get_cart_items(user_id))


@app.route('/api/users/<int:user_id>/cart', methods=['DELETE'])
def clear_cart(user_id):
    return jsonify(handlers.clear_cart(user_id))


@app.route('/api/users/<int:user_id>/cart/total')
def get_cart_total(user_id):
    return jsonify(handlers.get_cart_total(user_id))


@app.route('/api/users/<int:user_id>/cart/<int:product_id>', methods=['DELETE'])
def remove_from_cart(user_id, product_id):
    return jsonify(handlers.remove_from_cart(user_id, product_id))


@app.route('/api/cart', methods=['POST'])
def add_to_cart():
    return jsonify(handlers.add_to_cart(parse(AddToCartInput)))


@app.route('/api/users/<int:user_id>/checkout')
def quote_checkout(user_id):
    return jsonify(handlers.quote_checkout(user_id, request.args.get('coupon_code')))


@app.route('/api/checkout', methods=['POST'])
def checkout():
    return jsonify(handlers.checkout(parse(CheckoutInput))), 201


# reviews
@app.route('/api/reviews', methods=['GET'])
def get_reviews():
    return jsonify(handlers.get_reviews())


@app.route('/api/reviews', methods=['POST'])
def create_review():
    return jsonify(handlers.create_review(parse(CreateReviewInput))), 201


@app.route('/api/reviews/pending')
def get_pending_reviews():
    return jsonify(handlers.get_pending_reviews())


@app.route('/api/reviews/<int:id>', methods=['PATCH'])
def update_review(id):
    return jsonify(handlers.update_review(parse(UpdateReviewInput, id=id)))


# blog
@app.route('/api/blog', methods=['GET'])
def get_blog_posts():
    return jsonify(handlers.get_blog_posts())


@app.route('/api/blog', methods=['POST'])
def create_blog_post():
    return jsonify(handlers.create_blog_post(parse(CreateBlogPostInput))), 201


@app.route('/api/blog/admin')
def get_all_blog_posts_for_admin():
    return jsonify(handlers.get_all_blog_posts_for_admin())


@app.route('/api/blog/<slug>')
def get_blog_post_by_slug(slug):
    return found_or_404(handlers.get_blog_post_by_slug(slug), 'Blog post not found')


# admin dashboard
@app.route('/api/dashboard')
def get_dashboard_stats():
    return jsonify(handlers.get_dashboard_stats())


# settings
@app.route('/api/settings')
def get_settings():
    return jsonify(handlers.get_settings())


@app.route('/api/settings/<key>', methods=['GET'])
def get_setting_by_key(key):
    return found_or_404(handlers.get_setting_by_key(key), f"Setting with key '{key}' not found")


@app.route('/api/settings/<key>', methods=['PUT'])
def update_setting(key):
    return jsonify(handlers.update_setting(parse(UpdateSettingInput, key=key)))


@app.cli.command('init-db')
def init_db():
    """Create the tables and seed the admin account and default settings."""
    db.create_all()
    handlers.seed_defaults()
    click.echo('Database ready.')


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    with app.app_context():
        handlers.seed_defaults()
    app.run(debug=True, port=int(os.environ.get('PORT', 2022)))
