"""
Notification generation: low-stock sweeps, payment-due sweeps and
payment-received messages. Every message is stored in English and Arabic.
"""
from datetime import datetime, timedelta
import logging

from flask import current_app
from sqlalchemy import and_

from models import db, Notification, Product, Transaction, UserSettings, utcnow, qty
from .i18n import bilingual, unit_label, day_word, t

logger = logging.getLogger(__name__)


def notifications_enabled(user_id):
    settings = UserSettings.query.filter_by(user_id=user_id).first()
    return settings is None or bool(settings.notifications)


def _day_bounds(today):
    start = datetime(today.year, today.month, today.day)
    return start, start + timedelta(days=1)


def _already_notified(user_id, ntype, link, today):
    start, end = _day_bounds(today)
    return db.session.query(Notification.id).filter(
        Notification.user_id == user_id,
        Notification.type == ntype,
        Notification.link == link,
        Notification.created_at >= start,
        Notification.created_at < end,
    ).first() is not None


def create_notification(user_id, ntype, title, message, title_ar=None, message_ar=None, link=None):
    """Add a notification to the session. Caller commits."""
    n = Notification(
        user_id=user_id,
        type=ntype,
        status='UNREAD',
        title=title,
        message=message,
        title_ar=title_ar,
        message_ar=message_ar,
        link=link,
    )
    db.session.add(n)
    return n


def _currency(lang):
    configured = current_app.config.get('CURRENCY', 'DH')
    # The Arabic catalogue carries its own currency word for the default dirham.
    if configured == 'DH':
        return t(lang, 'currency')
    return configured


def run_stock_alerts(user_id=None, product_ids=None, today=None):
    """Create one STOCK_ALERT per low-stock product per day.

    Low stock means quantity strictly below the product's minimum quantity.
    Returns the notifications created (not committed).
    """
    today = today or utcnow().date()
    query = Product.query.filter(Product.quantity < Product.min_quantity)
    if user_id is not None:
        query = query.filter(Product.user_id == user_id)
    if product_ids:
        query = query.filter(Product.id.in_(list(product_ids)))

    created = []
    enabled = {}
    for product in query.order_by(Product.id).all():
        if product.user_id not in enabled:
            enabled[product.user_id] = notifications_enabled(product.user_id)
        if not enabled[product.user_id]:
            continue
        link = f'/inventory?id={product.id}'
        if _already_notified(product.user_id, 'STOCK_ALERT', link, today):
            continue
        title, title_ar = bilingual('low_stock_title')
        message, message_ar = bilingual(
            'low_stock_message',
            name=product.name,
            quantity=qty(product.quantity),
            min_quantity=qty(product.min_quantity),
            unit=lambda lang, u=product.unit: unit_label(lang, u),
        )
        created.append(create_notification(product.user_id, 'STOCK_ALERT', title, message,
                                           title_ar, message_ar, link))
    if created:
        logger.info("Created %d stock alert(s)", len(created))
    return created


def _party_name(tx):
    party = tx.client if tx.type == 'SALE' else tx.supplier
    if party is not None:
        return lambda lang, name=party.name: name
    return lambda lang: t(lang, 'unknown_party')


def run_payment_due_checks(user_id=None, today=None, window_days=None):
    """Create PAYMENT_DUE notifications for open transactions due soon or overdue.

    Covers PENDING transactions with an outstanding balance whose due date is on
    or before today + window. One notification per transaction per day.
    """
    today = today or utcnow().date()
    if window_days is None:
        window_days = current_app.config.get('PAYMENT_DUE_WINDOW_DAYS', 7)
    _, window_end = _day_bounds(today + timedelta(days=window_days))

    query = Transaction.query.filter(and_(
        Transaction.status == 'PENDING',
        Transaction.remaining_amount > 0,
        Transaction.payment_due_date.isnot(None),
        Transaction.payment_due_date < window_end,
    ))
    if user_id is not None:
        query = query.filter(Transaction.user_id == user_id)

    created = []
    enabled = {}
    for tx in query.order_by(Transaction.payment_due_date).all():
        if tx.user_id not in enabled:
            enabled[tx.user_id] = notifications_enabled(tx.user_id)
        if not enabled[tx.user_id]:
            continue
        link = f'/transactions?id={tx.id}'
        if _already_notified(tx.user_id, 'PAYMENT_DUE', link, today):
            continue
        days = tx.days_until_due(today)
        if days >= 0:
            title_key, message_key = 'payment_due_title', 'payment_due_message'
        else:
            title_key, message_key = 'payment_overdue_title', 'payment_overdue_message'
        title, title_ar = bilingual(title_key)
        message, message_ar = bilingual(
            message_key,
            currency=_currency,
            amount=format(tx.remaining_amount, '0.2f'),
            party=_party_name(tx),
            days=abs(days),
            day_word=lambda lang, d=days: day_word(lang, d),
        )
        created.append(create_notification(tx.user_id, 'PAYMENT_DUE', title, message,
                                           title_ar, message_ar, link))
    if created:
        logger.info("Created %d payment-due notification(s)", len(created))
    return created


def notify_payment_received(tx, amount):
    if not notifications_enabled(tx.user_id):
        return None
    title, title_ar = bilingual('payment_received_title')
    message, message_ar = bilingual(
        'payment_received_message',
        currency=_currency,
        amount=format(amount, '0.2f'),
        transaction_id=tx.id,
    )
    return create_notification(tx.user_id, 'PAYMENT_RECEIVED', title, message,
                               title_ar, message_ar, f'/transactions?id={tx.id}')
