from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime, timezone
from sqlalchemy.orm import validates
from decimal import Decimal, ROUND_HALF_UP, getcontext
from sqlalchemy.types import TypeDecorator, Numeric as SA_Numeric
import logging
import re


db = SQLAlchemy()

getcontext().prec = 28

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = ('PURCHASE', 'SALE', 'ADJUSTMENT')
TRANSACTION_STATUSES = ('PENDING', 'COMPLETED', 'CANCELLED')
PAYMENT_METHODS = ('CASH', 'BANK_TRANSFER', 'CHECK')
PAYMENT_STATUSES = ('COMPLETED', 'PENDING', 'FAILED')
EXPENSE_STATUSES = ('PENDING', 'COMPLETED', 'CANCELLED')
NOTIFICATION_TYPES = ('STOCK_ALERT', 'PAYMENT_DUE', 'PAYMENT_RECEIVED', 'SYSTEM')
NOTIFICATION_STATUSES = ('UNREAD', 'READ', 'ARCHIVED')
UNITS = ('KG', 'GRAM', 'PIECE')
ROLES = ('Admin', 'Manager', 'Cashier')
LANGUAGES = ('en', 'ar')
THEMES = ('light', 'dark')

SKU_PATTERN = re.compile(r'^[A-Za-z0-9\-_]+$')
MAX_PRICE = Decimal('1000000')
MAX_QUANTITY = Decimal('1000000')


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _quantize(value, places):
    if value is None:
        return None
    if not isinstance(value, Decimal):
        try:
            value = Decimal(str(value))
        except Exception:
            raise ValueError(f"Cannot convert {value!r} to Decimal")
    return value.quantize(places, rounding=ROUND_HALF_UP)


class Money(TypeDecorator):
    """
    SQLAlchemy TypeDecorator to store Decimal values in a NUMERIC/DECIMAL column.
    - Python value: decimal.Decimal (quantized to 2 decimal places, ROUND_HALF_UP)
    - DB value: Decimal stored in NUMERIC(18,2)
    """
    impl = SA_Numeric(precision=18, scale=2)
    cache_ok = True
    places = Decimal('0.01')

    def process_bind_param(self, value, dialect):
        return _quantize(value, self.places)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return _quantize(value, self.places)
        except ValueError:
            logger.exception("%s.process_result_value: failed to parse DB value %r (type=%s)",
                             type(self).__name__, value, type(value))
            return Decimal('0').quantize(self.places)

    @property
    def python_type(self):
        return Decimal


class Quantity(Money):
    """Stock quantities: three decimal places so KG and GRAM units keep their precision."""
    impl = SA_Numeric(precision=14, scale=3)
    cache_ok = True
    places = Decimal('0.001')


def money(value):
    """JSON-safe float for a Money value."""
    if value is None:
        return 0.0
    return float(_quantize(value, Money.places))


def qty(value):
    """JSON-safe number for a Quantity value; whole quantities render as ints."""
    if value is None:
        return 0
    d = _quantize(value, Quantity.places)
    if d == d.to_integral_value():
        return int(d)
    return float(d)


def iso(value):
    return value.isoformat() if value else None


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), unique=True, nullable=False)
    password_hash = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(50), nullable=False, default='Cashier')
    created_at = db.Column(db.DateTime, default=utcnow)

    settings = db.relationship('UserSettings', uselist=False, back_populates='user',
                               cascade='all, delete-orphan')

    @property
    def is_admin(self):
        return (self.role or '').lower() == 'admin'

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "createdAt": iso(self.created_at),
        }


class UserSettings(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="CASCADE"), unique=True, nullable=False)
    language = db.Column(db.String(5), nullable=False, default='en')
    theme = db.Column(db.String(10), nullable=False, default='light')
    notifications = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    user = db.relationship('User', back_populates='settings')

    @validates('language')
    def validate_language(self, key, value):
        if value not in LANGUAGES:
            raise ValueError(f'Unsupported language {value!r}')
        return value

    @validates('theme')
    def validate_theme(self, key, value):
        if value not in THEMES:
            raise ValueError(f'Unsupported theme {value!r}')
        return value

    def to_dict(self):
        return {
            "language": self.language,
            "theme": self.theme,
            "notifications": bool(self.notifications),
            "updatedAt": iso(self.updated_at),
        }


class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="CASCADE"), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    products = db.relationship('Product', back_populates='category', lazy='dynamic')

    def to_dict(self, product_count=None):
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }
        if product_count is not None:
            data["productCount"] = product_count
        return data

    __table_args__ = (
        db.Index('idx_category_user_name', 'user_id', 'name'),
    )


class Supplier(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="CASCADE"), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200))
    phone = db.Column(db.String(50), nullable=False)
    address = db.Column(db.String(300), nullable=False)
    # Payables; maintained by the balance reconciliation in routes.balance_utils
    total_due = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    amount_paid = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    balance = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    products = db.relationship('Product', back_populates='supplier', lazy='dynamic')

    def to_dict(self, product_count=None):
        data = {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "totalDue": money(self.total_due),
            "amountPaid": money(self.amount_paid),
            "balance": money(self.balance),
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }
        if product_count is not None:
            data["productCount"] = product_count
        return data

    __table_args__ = (
        db.Index('idx_supplier_user_name', 'user_id', 'name'),
        db.Index('idx_supplier_email', 'email'),
    )


class Client(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="CASCADE"), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200))
    phone = db.Column(db.String(50), nullable=False)
    address = db.Column(db.String(300), nullable=False)
    notes = db.Column(db.Text)
    # Amounts entered by hand rather than produced by transactions
    opening_due = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    opening_paid = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    total_due = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    amount_paid = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    balance = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    transactions = db.relationship('Transaction', back_populates='client', lazy='dynamic')

    def to_dict(self, transaction_count=None):
        data = {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "notes": self.notes,
            "totalDue": money(self.total_due),
            "amountPaid": money(self.amount_paid),
            "balance": money(self.balance),
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }
        if transaction_count is not None:
            data["transactionCount"] = transaction_count
        return data

    __table_args__ = (
        db.Index('idx_client_user_name', 'user_id', 'name'),
        db.Index('idx_client_email', 'email'),
    )


class Product(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="CASCADE"), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    sku = db.Column(db.String(50), nullable=False)
    price = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    cost_price = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    quantity = db.Column(Quantity(), nullable=False, default=Decimal('0.000'))
    min_quantity = db.Column(Quantity(), nullable=False, default=Decimal('0.000'))
    unit = db.Column(db.String(10), nullable=False, default='PIECE')
    image = db.Column(db.String(500))
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'), nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey('supplier.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    category = db.relationship('Category', back_populates='products')
    supplier = db.relationship('Supplier', back_populates='products')

    def is_low_stock(self):
        return self.quantity < self.min_quantity

    def adjust_stock(self, change):
        """Apply a signed quantity change. Never drives stock below zero."""
        new_qty = Decimal(self.quantity or 0) + Decimal(change)
        if new_qty < 0:
            raise ValueError(f'Insufficient stock for {self.name}')
        self.quantity = new_qty

    @validates('sku')
    def validate_sku(self, key, value):
        value = (value or '').strip()
        if not (3 <= len(value) <= 50) or not SKU_PATTERN.match(value):
            raise ValueError('SKU must be 3-50 characters of letters, digits, hyphens or underscores')
        return value

    @validates('price', 'cost_price')
    def validate_prices(self, key, value):
        d = _quantize(value if value not in (None, '') else '0', Money.places)
        if d < 0 or d > MAX_PRICE:
            raise ValueError(f'{key} must be between 0 and {MAX_PRICE}')
        return d

    @validates('quantity', 'min_quantity')
    def validate_quantity(self, key, value):
        if value is None:
            raise ValueError(f'{key} cannot be None')
        d = _quantize(value, Quantity.places)
        if d < 0:
            raise ValueError(f'{key} cannot be negative')
        if d > MAX_QUANTITY:
            raise ValueError(f'{key} cannot exceed {MAX_QUANTITY}')
        return d

    @validates('unit')
    def validate_unit(self, key, value):
        if value not in UNITS:
            raise ValueError(f'Unit must be one of {", ".join(UNITS)}')
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "sku": self.sku,
            "price": money(self.price),
            "costPrice": money(self.cost_price),
            "quantity": qty(self.quantity),
            "minQuantity": qty(self.min_quantity),
            "unit": self.unit,
            "image": self.image,
            "categoryId": self.category_id,
            "supplierId": self.supplier_id,
            "category": {"id": self.category.id, "name": self.category.name} if self.category else None,
            "supplier": {"id": self.supplier.id, "name": self.supplier.name} if self.supplier else None,
            "lowStock": self.is_low_stock(),
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }

    __table_args__ = (
        db.UniqueConstraint('user_id', 'sku', name='uq_product_user_sku'),
        db.Index('idx_product_name', 'name'),
        db.Index('idx_product_category', 'category_id'),
        db.Index('idx_product_supplier', 'supplier_id'),
    )


class Transaction(db.Model):
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="CASCADE"), nullable=False)
    type = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='PENDING')
    total = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    amount_paid = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    remaining_amount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    payment_method = db.Column(db.String(20))
    payment_due_date = db.Column(db.DateTime, nullable=True)
    reference = db.Column(db.String(100))
    notes = db.Column(db.Text)
    client_id = db.Column(db.Integer, db.ForeignKey('client.id'), nullable=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey('supplier.id'), nullable=True)
    date = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    client = db.relationship('Client', back_populates='transactions')
    supplier = db.relationship('Supplier')
    items = db.relationship('TransactionItem', back_populates='transaction',
                            cascade='all, delete-orphan')
    payments = db.relationship('Payment', back_populates='transaction',
                               order_by='Payment.date')

    @property
    def party(self):
        """The account whose balance this transaction moves: client for a sale,
        supplier for a purchase, nobody for a stock adjustment."""
        if self.type == 'SALE':
            return self.client
        if self.type == 'PURCHASE':
            return self.supplier
        return None

    def days_until_due(self, today=None):
        if not self.payment_due_date:
            return None
        today = today or utcnow().date()
        return (self.payment_due_date.date() - today).days

    def to_dict(self, include_items=True, include_payments=False):
        data = {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "total": money(self.total),
            "amountPaid": money(self.amount_paid),
            "remainingAmount": money(self.remaining_amount),
            "paymentMethod": self.payment_method,
            "paymentDueDate": iso(self.payment_due_date),
            "reference": self.reference,
            "notes": self.notes,
            "clientId": self.client_id,
            "supplierId": self.supplier_id,
            "client": {"id": self.client.id, "name": self.client.name} if self.client else None,
            "supplier": {"id": self.supplier.id, "name": self.supplier.name} if self.supplier else None,
            "date": iso(self.date),
            "updatedAt": iso(self.updated_at),
        }
        if include_items:
            data["items"] = [it.to_dict() for it in self.items]
        if include_payments:
            data["payments"] = [p.to_dict(include_transaction=False) for p in self.payments]
        return data

    __table_args__ = (
        db.Index('idx_transaction_user_date', 'user_id', 'date'),
        db.Index('idx_transaction_type_status', 'type', 'status'),
        db.Index('idx_transaction_client', 'client_id'),
        db.Index('idx_transaction_due', 'payment_due_date'),
    )


class TransactionItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('transactions.id', ondelete="CASCADE"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False)
    quantity = db.Column(Quantity(), nullable=False)
    price = db.Column(Money(), nullable=False)
    # Product cost at the time of the line; profit reports use it
    cost_price = db.Column(Money(), nullable=False, default=Decimal('0.00'))

    transaction = db.relationship('Transaction', back_populates='items')
    product = db.relationship('Product')

    @property
    def line_total(self):
        return _quantize(Decimal(self.quantity) * Decimal(self.price), Money.places)

    def to_dict(self):
        return {
            "id": self.id,
            "productId": self.product_id,
            "product": {"id": self.product.id, "name": self.product.name, "sku": self.product.sku,
                        "unit": self.product.unit} if self.product else None,
            "quantity": qty(self.quantity),
            "price": money(self.price),
            "total": money(self.line_total),
        }

    __table_args__ = (
        db.Index('idx_transaction_item_product', 'product_id'),
    )


class Payment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="CASCADE"), nullable=False)
    transaction_id = db.Column(db.Integer, db.ForeignKey('transactions.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('client.id'), nullable=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey('supplier.id'), nullable=True)
    amount = db.Column(Money(), nullable=False)
    payment_method = db.Column(db.String(20), nullable=False, default='CASH')
    status = db.Column(db.String(20), nullable=False, default='COMPLETED')
    reference = db.Column(db.String(100))
    notes = db.Column(db.Text)
    date = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    transaction = db.relationship('Transaction', back_populates='payments')
    client = db.relationship('Client')
    supplier = db.relationship('Supplier')

    def to_dict(self, include_transaction=True):
        data = {
            "id": self.id,
            "transactionId": self.transaction_id,
            "clientId": self.client_id,
            "supplierId": self.supplier_id,
            "amount": money(self.amount),
            "paymentMethod": self.payment_method,
            "status": self.status,
            "reference": self.reference,
            "notes": self.notes,
            "date": iso(self.date),
            "client": {"id": self.client.id, "name": self.client.name} if self.client else None,
        }
        if include_transaction and self.transaction:
            data["transaction"] = {
                "id": self.transaction.id,
                "type": self.transaction.type,
                "total": money(self.transaction.total),
                "remainingAmount": money(self.transaction.remaining_amount),
                "status": self.transaction.status,
            }
        return data

    __table_args__ = (
        db.Index('idx_payment_transaction', 'transaction_id'),
        db.Index('idx_payment_user_date', 'user_id', 'date'),
        db.Index('idx_payment_client', 'client_id'),
    )


class ExpenseCategory(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="CASCADE"), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    expenses = db.relationship('Expense', back_populates='category', lazy='dynamic')

    def to_dict(self, expense_count=None):
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }
        if expense_count is not None:
            data["expenseCount"] = expense_count
        return data


class Expense(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="CASCADE"), nullable=False)
    category_id = db.Column(db.Integer, db.ForeignKey('expense_category.id'), nullable=False)
    amount = db.Column(Money(), nullable=False)
    description = db.Column(db.String(500), nullable=False)
    date = db.Column(db.DateTime, default=utcnow)
    status = db.Column(db.String(20), nullable=False, default='COMPLETED')
    payment_method = db.Column(db.String(20))
    reference = db.Column(db.String(100))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    category = db.relationship('ExpenseCategory', back_populates='expenses')

    def to_dict(self):
        return {
            "id": self.id,
            "amount": money(self.amount),
            "description": self.description,
            "date": iso(self.date),
            "status": self.status,
            "paymentMethod": self.payment_method,
            "reference": self.reference,
            "notes": self.notes,
            "categoryId": self.category_id,
            "category": {"id": self.category.id, "name": self.category.name} if self.category else None,
            "createdAt": iso(self.created_at),
        }

    __table_args__ = (
        db.Index('idx_expense_user_date', 'user_id', 'date'),
        db.Index('idx_expense_category', 'category_id'),
    )


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="CASCADE"), nullable=False)
    type = db.Column(db.String(30), nullable=False, default='SYSTEM')
    status = db.Column(db.String(20), nullable=False, default='UNREAD')
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    title_ar = db.Column(db.String(200))
    message_ar = db.Column(db.Text)
    link = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self, lang='en'):
        if lang == 'ar':
            title = self.title_ar or self.title
            message = self.message_ar or self.message
        else:
            title, message = self.title, self.message
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "title": title,
            "message": message,
            "link": self.link,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }

    __table_args__ = (
        db.Index('idx_notification_user_status', 'user_id', 'status'),
        db.Index('idx_notification_link', 'link'),
    )


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"))
    user = db.relationship('User')
    action = db.Column(db.String(255), nullable=False)
    timestamp = db.Column(db.DateTime, default=utcnow)
    ip_address = db.Column(db.String(45))

    def __repr__(self):
        username = self.user.username if self.user else 'System'
        return f'<AuditLog {self.timestamp} - {username}: {self.action}>'

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "username": self.user.username if self.user else None,
            "action": self.action,
            "timestamp": iso(self.timestamp),
            "ipAddress": self.ip_address,
        }

    __table_args__ = (
        db.Index('idx_auditlog_user_id', 'user_id'),
        db.Index('idx_auditlog_timestamp', 'timestamp'),
    )
