from flask import Blueprint, request, current_app
from flask_login import login_required, current_user

from models import db, Notification, UserSettings, NOTIFICATION_TYPES, NOTIFICATION_STATUSES, LANGUAGES
from .alert_utils import run_stock_alerts, run_payment_due_checks, create_notification
from .errors import ApiError, ok
from .utils import get_json, clean_str, get_owned_or_404, paginate_query, log_action

notifications_bp = Blueprint('notifications', __name__, url_prefix='/api')

DEFAULT_LIMIT = 50


def _language():
    lang = request.args.get('lang')
    if lang in LANGUAGES:
        return lang
    settings = UserSettings.query.filter_by(user_id=current_user.id).first()
    if settings is not None:
        return settings.language
    return current_app.config.get('DEFAULT_LANGUAGE', 'en')


@notifications_bp.route('/notifications', methods=['GET'])
@login_required
def list_notifications():
    query = Notification.query.filter(Notification.user_id == current_user.id)
    status = request.args.get('status')
    if status:
        if status not in NOTIFICATION_STATUSES:
            raise ApiError.bad_request(f'Unknown notification status: {status}')
        query = query.filter(Notification.status == status)
    ntype = request.args.get('type')
    if ntype:
        if ntype not in NOTIFICATION_TYPES:
            raise ApiError.bad_request(f'Unknown notification type: {ntype}')
        query = query.filter(Notification.type == ntype)

    unread = Notification.query.filter_by(user_id=current_user.id, status='UNREAD').count()
    lang = _language()
    rows, metadata = paginate_query(query.order_by(Notification.created_at.desc(), Notification.id.desc()),
                                    default_limit=DEFAULT_LIMIT)
    return ok({"items": [n.to_dict(lang) for n in rows], "metadata": metadata, "unreadCount": unread})


@notifications_bp.route('/notifications', methods=['POST'])
@login_required
def create_notification_route():
    data = get_json()
    errors = {}
    ntype = clean_str(data.get('type')) or 'SYSTEM'
    if ntype not in NOTIFICATION_TYPES:
        errors['type'] = [f'type must be one of {", ".join(NOTIFICATION_TYPES)}']
    title = clean_str(data.get('title'))
    message = clean_str(data.get('message'))
    if not title:
        errors['title'] = ['title is required']
    if not message:
        errors['message'] = ['message is required']
    if errors:
        raise ApiError.validation(errors)
    n = create_notification(current_user.id, ntype, title, message,
                            title_ar=clean_str(data.get('titleAr')),
                            message_ar=clean_str(data.get('messageAr')),
                            link=clean_str(data.get('link')))
    log_action(f'Created notification: {title}.')
    db.session.commit()
    return ok(n.to_dict(_language()), 201)


@notifications_bp.route('/notifications', methods=['DELETE'])
@login_required
def mark_all_read():
    updated = Notification.query.filter_by(user_id=current_user.id, status='UNREAD') \
        .update({Notification.status: 'READ'}, synchronize_session=False)
    log_action(f'Marked {updated} notification(s) as read.')
    db.session.commit()
    return ok({"updated": updated})


@notifications_bp.route('/notifications/stock-alerts', methods=['POST'])
@login_required
def check_stock_alerts():
    created = run_stock_alerts(user_id=current_user.id)
    log_action(f'Ran stock alert check ({len(created)} created).')
    db.session.commit()
    lang = _language()
    return ok({"created": len(created), "notifications": [n.to_dict(lang) for n in created]})


@notifications_bp.route('/notifications/payment-due-check', methods=['POST'])
@login_required
def check_payment_due():
    created = run_payment_due_checks(user_id=current_user.id)
    log_action(f'Ran payment due check ({len(created)} created).')
    db.session.commit()
    lang = _language()
    return ok({"created": len(created), "notifications": [n.to_dict(lang) for n in created]})


@notifications_bp.route('/notifications/<int:notification_id>', methods=['GET'])
@login_required
def get_notification(notification_id):
    n = get_owned_or_404(Notification, notification_id, 'Notification')
    return ok(n.to_dict(_language()))


@notifications_bp.route('/notifications/<int:notification_id>', methods=['PATCH', 'PUT'])
@login_required
def update_notification(notification_id):
    n = get_owned_or_404(Notification, notification_id, 'Notification')
    status = clean_str(get_json().get('status'))
    if status not in NOTIFICATION_STATUSES:
        raise ApiError.validation({'status': [f'status must be one of {", ".join(NOTIFICATION_STATUSES)}']})
    n.status = status
    log_action(f'Marked notification #{n.id} as {status}.')
    db.session.commit()
    return ok(n.to_dict(_language()))


@notifications_bp.route('/notifications/<int:notification_id>', methods=['DELETE'])
@login_required
def delete_notification(notification_id):
    n = get_owned_or_404(Notification, notification_id, 'Notification')
    db.session.delete(n)
    log_action(f'Deleted notification #{notification_id}.')
    db.session.commit()
    return ok({"id": notification_id})
