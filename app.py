import os
import sys
import logging

from flask import Flask
from flask_login import LoginManager
from flask_migrate import Migrate

from models import db, User, Category, Supplier, ExpenseCategory
from config import Config
from extensions import limiter
from routes.utils import cache
from routes.errors import ApiError, register_error_handlers

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    ('Electronics', 'Electronic devices and accessories'),
    ('Food & Beverages', 'Food items and drinks'),
    ('Clothing', 'Apparel and fashion items'),
]

DEFAULT_SUPPLIERS = [
    ('Tech Supplies Inc', 'contact@techsupplies.com', '+1234567890', '123 Tech Street, Silicon Valley'),
    ('Global Foods', 'orders@globalfoods.com', '+1987654321', '456 Food Avenue, Chicago'),
    ('Fashion Wholesale', 'sales@fashionwholesale.com', '+1122334455', '789 Fashion Boulevard, New York'),
]

DEFAULT_EXPENSE_CATEGORIES = [
    ('Rent', 'Shop and warehouse rent'),
    ('Utilities', 'Electricity, water and internet'),
    ('Salaries', 'Staff wages'),
    ('Transport', 'Delivery and fuel'),
]


def create_app(config_object=None):
    if getattr(sys, 'frozen', False):
        try:
            os.chdir(str(Config.BASE_DIR))
        except OSError:
            logger.exception("Failed to chdir to BASE_DIR in frozen mode")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    cache.init_app(app)
    limiter.init_app(app)

    from routes.auth import auth_bp
    from routes.users import user_bp
    from routes.catalog import catalog_bp
    from routes.clients import clients_bp
    from routes.transactions import transactions_bp
    from routes.payments import payments_bp
    from routes.expenses import expenses_bp
    from routes.notifications import notifications_bp
    from routes.reports import reports_bp

    for bp in (auth_bp, user_bp, catalog_bp, clients_bp, transactions_bp, payments_bp,
               expenses_bp, notifications_bp, reports_bp):
        app.register_blueprint(bp)

    db.init_app(app)
    Migrate(app, db)

    register_error_handlers(app)

    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        try:
            uid = int(user_id)
        except (TypeError, ValueError):
            return None
        return db.session.get(User, uid)

    @login_manager.unauthorized_handler
    def unauthorized():
        raise ApiError.unauthorized()

    from commands import register_commands
    register_commands(app)

    @app.route('/api/health')
    def health():
        return {"success": True, "data": {"status": "ok"}}

    return app


def seed_essential_data(app, user=None):
    """Seeds default categories, suppliers and expense categories for a user with none."""
    with app.app_context():
        if user is None:
            user = User.query.filter(User.role == 'Admin').order_by(User.id).first()
        if user is None:
            logger.info("No user to seed data for; skipping.")
            return False
        if Category.query.filter_by(user_id=user.id).count() > 0:
            logger.info("User %s already has data; skipping seed.", user.username)
            return False
        logger.info("Seeding default data for %s...", user.username)
        try:
            for name, description in DEFAULT_CATEGORIES:
                db.session.add(Category(user_id=user.id, name=name, description=description))
            for name, email, phone, address in DEFAULT_SUPPLIERS:
                db.session.add(Supplier(user_id=user.id, name=name, email=email, phone=phone, address=address))
            for name, description in DEFAULT_EXPENSE_CATEGORIES:
                db.session.add(ExpenseCategory(user_id=user.id, name=name, description=description))
            db.session.commit()
            logger.info("Default data seeded.")
            return True
        except Exception:
            db.session.rollback()
            logger.exception("Error seeding default data")
            raise
