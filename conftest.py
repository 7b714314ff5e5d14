import itertools
import os
import tempfile
from datetime import datetime, timedelta

import pytest
import requests

# Must be set before app is imported
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['SESSION_SECRET'] = 'test-secret'
os.environ['RAZORPAY_KEY_ID'] = 'rzp_test_key'
os.environ['RAZORPAY_KEY_SECRET'] = 'rzp_test_secret'
os.environ['AUDIT_LOG_DIR'] = tempfile.mkdtemp(prefix='unjob-audit-')
os.environ.pop('AUDIT_WEBHOOK_URL', None)
os.environ.pop('SENDGRID_API_KEY', None)

from app import app as flask_app
from escrow_gateway import EscrowGatewayClient
from models import db, Gig, Subscription, User

TEST_SECRET = 'rzp_test_secret'


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
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess['user_id'] = user.id
    return _login


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def _make(role='freelancer', **kwargs):
        n = next(counter)
        user = User(
            username=f'{role}{n}',
            email=f'{role}{n}@example.com',
            full_name=f'{role.title()} {n}',
            role=role,
            **kwargs
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def make_subscription(app):
    def _make(user, plan='free', billing_cycle='monthly', status='active',
              max_applications=None, start_date=None, end_date=None):
        now = datetime.utcnow()
        subscription = Subscription(
            user_id=user.id,
            plan=plan,
            billing_cycle=billing_cycle,
            status=status,
            max_applications=max_applications,
            start_date=start_date or now - timedelta(days=1),
            end_date=end_date if end_date is not None else now + timedelta(days=30)
        )
        db.session.add(subscription)
        db.session.commit()
        return subscription
    return _make


@pytest.fixture
def make_freelancer(make_user, make_subscription):
    def _make(**kwargs):
        user = make_user('freelancer', **kwargs)
        make_subscription(user)
        return user
    return _make


@pytest.fixture
def make_gig(app):
    def _make(company, budget=5000.0, status='published', title='Logo design'):
        gig = Gig(company_id=company.id, title=title, description='Design a logo',
                  budget=budget, status=status)
        db.session.add(gig)
        db.session.commit()
        return gig
    return _make


@pytest.fixture
def company(make_user):
    return make_user('hiring')


@pytest.fixture
def admin(make_user):
    return make_user('admin')


def sign(order_id, payment_id, secret=TEST_SECRET):
    return EscrowGatewayClient.compute_signature(order_id, payment_id, secret)


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f'{self.status_code} Error', response=self)


@pytest.fixture
def provider(monkeypatch):
    """Stub the payment provider's orders endpoint"""
    calls = []
    counter = itertools.count(1)

    def fake_post(url, json=None, auth=None, headers=None, timeout=None):
        calls.append({'url': url, 'json': json, 'auth': auth, 'timeout': timeout})
        return FakeResponse({
            'id': f'order_test{next(counter)}',
            'amount': json['amount'],
            'currency': json['currency'],
            'receipt': json['receipt'],
            'status': 'created'
        })

    monkeypatch.setattr(requests, 'post', fake_post)
    return calls


@pytest.fixture
def accept_direct(provider):
    """Run the direct-accept flow end to end and return its result"""
    import application_lifecycle

    def _accept(company, freelancer, gig, payment_id='pay_test1'):
        order = application_lifecycle.create_payment_order(company, gig.id, freelancer.id, mode='direct')
        order_id = order['order']['id']
        return application_lifecycle.complete_payment_and_accept(
            company, gig.id, freelancer.id, order_id, payment_id, sign(order_id, payment_id),
            mode='direct'
        )
    return _accept
