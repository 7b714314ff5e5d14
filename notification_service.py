"""
Notification dispatch for the application lifecycle.

``notify`` is fire-and-forget: it stores an in-app Notification inside a
savepoint and, for money-related kinds, sends an email through SendGrid.
Any failure is logged and swallowed so that the business operation that
triggered it is never rolled back or failed. Call it only after the
triggering operation has committed.
"""

import logging

from email_service import email_service
from models import db, Notification, User

logger = logging.getLogger(__name__)

# kind -> (title, message template, link template)
NOTIFICATION_TEMPLATES = {
    'application_created': (
        'New Application Received',
        '{freelancer_name} applied to "{gig_title}" with {iterations} iterations',
        '/gigs/{gig_id}/applications'
    ),
    'application_status_changed': (
        'Application Update',
        'Your application for "{gig_title}" is now {status}',
        '/gigs/{gig_id}'
    ),
    'payment_completed': (
        'Payment Completed',
        'Escrow payment of ₹{amount} for "{gig_title}" has been verified',
        '/conversations/{conversation_id}'
    ),
    'project_submitted': (
        'Project Submitted',
        '{freelancer_name} submitted "{project_title}" (iteration {iteration})',
        '/projects/{project_id}'
    ),
    'project_reviewed': (
        'Project Reviewed',
        'Your project "{project_title}" was marked {status}',
        '/projects/{project_id}'
    ),
    'project_completed': (
        'Project Completed',
        '"{project_title}" was approved and ₹{amount} was credited to your wallet',
        '/freelancer/earnings'
    ),
    'withdrawal_requested': (
        'Withdrawal Request Submitted',
        'Your withdrawal request {reference} for ₹{amount} is being processed',
        '/freelancer/earnings'
    ),
    'withdrawal_resolved': (
        'Withdrawal Update',
        'Your withdrawal {reference} for ₹{amount} is {status}',
        '/freelancer/earnings'
    ),
    'negotiation_proposal': (
        'New Proposal',
        'A new offer of ₹{amount} was made for "{gig_title}"',
        '/conversations/{conversation_id}'
    ),
}

ADMIN_TEMPLATES = {
    'withdrawal_requested': (
        'New Withdrawal Request',
        '{freelancer_name} requested withdrawal of ₹{amount} ({reference})',
        '/admin/withdrawals/{related_id}'
    ),
}

EMAIL_KINDS = {'payment_completed', 'project_completed', 'withdrawal_resolved'}


class _SafeDict(dict):
    def __missing__(self, key):
        return ''


def _render(template, payload):
    return template.format_map(_SafeDict(payload))


def notify(recipient_id, kind, payload=None):
    """
    Send an in-app notification (and maybe an email) to one user.

    Args:
        recipient_id: User to notify
        kind: One of NOTIFICATION_TEMPLATES
        payload: Values for the message template; ``related_id`` is stored

    Returns:
        The Notification, or None if anything went wrong
    """
    payload = payload or {}
    try:
        templates = ADMIN_TEMPLATES if payload.get('admin') else NOTIFICATION_TEMPLATES
        title, message_template, link_template = templates.get(
            kind, (kind.replace('_', ' ').title(), '', None)
        )
        message = _render(message_template, payload)
        link = _render(link_template, payload) if link_template else None

        with db.session.begin_nested():
            notification = Notification(
                user_id=recipient_id,
                notification_type=kind,
                title=title,
                message=message,
                link=link,
                related_id=payload.get('related_id')
            )
            db.session.add(notification)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to create {kind} notification for user {recipient_id}: {str(e)}")
        return None

    if kind in EMAIL_KINDS and not payload.get('admin'):
        _send_email(recipient_id, title, message, link)

    return notification


def _send_email(recipient_id, title, message, link):
    if not email_service.is_configured():
        return
    try:
        user = db.session.get(User, recipient_id)
        if not user or not user.email:
            return
        success, result, _ = email_service.send_email(
            user.email, user.display_name, title,
            email_service.render_html(title, message, link), message
        )
        if not success:
            logger.warning(f"Notification email to user {recipient_id} not sent: {result}")
    except Exception as e:
        logger.error(f"Notification email to user {recipient_id} failed: {str(e)}")


def notify_admins(kind, payload=None):
    """Notify every admin account"""
    try:
        admin_ids = [row.id for row in User.query.filter_by(role='admin').all()]
    except Exception as e:
        logger.error(f"Failed to load admins for {kind} notification: {str(e)}")
        return
    for admin_id in admin_ids:
        notify(admin_id, kind, payload)
