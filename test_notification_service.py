import notification_service
from models import db, Notification


def test_notify_stores_rendered_notification(make_user):
    user = make_user('hiring')

    notification = notification_service.notify(user.id, 'application_created', {
        'freelancer_name': 'Asha', 'gig_title': 'Logo design', 'iterations': 3,
        'gig_id': 12, 'related_id': 40
    })

    assert notification.title == 'New Application Received'
    assert notification.message == 'Asha applied to "Logo design" with 3 iterations'
    assert notification.link == '/gigs/12/applications'
    assert Notification.query.filter_by(user_id=user.id).one().related_id == 40


def test_missing_payload_keys_render_blank(make_user):
    user = make_user()
    notification = notification_service.notify(user.id, 'withdrawal_resolved')
    assert notification.message == 'Your withdrawal  for ₹ is '


def test_admin_variant(make_user, admin):
    make_user('admin')
    notification_service.notify_admins('withdrawal_requested', {
        'freelancer_name': 'Asha', 'amount': 500, 'reference': 'WD-1', 'related_id': 9, 'admin': True
    })

    rows = Notification.query.filter_by(notification_type='withdrawal_requested').all()
    assert len(rows) == 2
    assert all(r.title == 'New Withdrawal Request' for r in rows)
    assert rows[0].link == '/admin/withdrawals/9'


def test_failures_are_swallowed(make_user, monkeypatch):
    user = make_user()

    def broken(*args, **kwargs):
        raise RuntimeError('disk full')
    monkeypatch.setattr(db.session, 'add', broken)

    assert notification_service.notify(user.id, 'payment_completed', {'amount': 10}) is None


def test_email_only_for_money_kinds(make_user, monkeypatch):
    user = make_user()
    sent = []
    monkeypatch.setattr(notification_service, '_send_email', lambda *args: sent.append(args))

    notification_service.notify(user.id, 'application_status_changed', {'status': 'accepted'})
    notification_service.notify(user.id, 'payment_completed', {'amount': 10})

    assert len(sent) == 1
    assert sent[0][0] == user.id


def test_unconfigured_email_is_skipped(make_user):
    user = make_user()
    assert notification_service.email_service.is_configured() is False
    assert notification_service.notify(user.id, 'project_completed', {'amount': 10}) is not None


def test_email_body_is_branded_and_escaped(app, monkeypatch):
    monkeypatch.setenv('APP_BASE_URL', 'https://unjob.example/')

    body = notification_service.email_service.render_html(
        'Payment Completed', 'Paid <b>₹500</b>', '/gigs/3'
    )

    assert 'Unjob' in body
    assert '<h2 style="margin: 0 0 16px; color: #111827; font-size: 20px;">Payment Completed</h2>' in body
    assert 'Paid &lt;b&gt;₹500&lt;/b&gt;' in body
    assert 'href="https://unjob.example/gigs/3"' in body


def test_email_body_without_link(app):
    body = notification_service.email_service.render_html('Withdrawal Update', None)
    assert 'View details' not in body
