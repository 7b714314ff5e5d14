"""
Escrow Gateway for Unjob
Razorpay-compatible orders API used to hold a company's payment before a
freelancer starts work.

Configuration Required:
- RAZORPAY_KEY_ID: Public key id, also handed to the client checkout
- RAZORPAY_KEY_SECRET: Secret used for basic auth and signature checks
- RAZORPAY_BASE_URL: Override the API base (defaults to production)

The client completes checkout and reports (order_id, payment_id, signature).
The signature is HMAC-SHA256 over ``order_id|payment_id`` keyed with the
secret, hex encoded. Verification happens here on every report; there is no
way to skip it.
"""

import hashlib
import hmac
import logging
import os
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Any, Union

import requests

from errors import ConflictError, InvalidSignatureError, ServiceUnavailableError, ValidationError
from models import db, to_money, Payment, PaymentStatusHistory

logger = logging.getLogger(__name__)


class EscrowGatewayConfig:
    """Payment provider settings"""
    PRODUCTION_URL = "https://api.razorpay.com/v1"

    def __init__(self):
        self.key_id = os.environ.get('RAZORPAY_KEY_ID', '')
        self.key_secret = os.environ.get('RAZORPAY_KEY_SECRET', '')
        self.base_url = os.environ.get('RAZORPAY_BASE_URL', self.PRODUCTION_URL).rstrip('/')

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)


class EscrowGatewayClient:
    """
    Orders API client

    Usage:
        client = EscrowGatewayClient()
        order = client.create_order(2500.00, receipt="negotiate_12_7", notes={"gig_id": 12})
        client.verify_signature(order["id"], payment_id, signature)
    """

    def __init__(self):
        self.config = EscrowGatewayConfig()

    def is_available(self) -> bool:
        """Check if the gateway is properly configured"""
        return self.config.is_configured

    def _make_request(self, endpoint: str, data: Dict[str, Any]) -> Dict:
        """POST to the provider and return the decoded JSON body"""
        url = f"{self.config.base_url}/{endpoint}"
        try:
            response = requests.post(
                url,
                json=data,
                auth=(self.config.key_id, self.config.key_secret),
                headers={'Content-Type': 'application/json'},
                timeout=30
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            logger.error(f"Payment provider rejected {endpoint}: {e}")
            raise ServiceUnavailableError('Payment provider rejected the request. Please try again later.')
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Payment provider unreachable for {endpoint}: {e}")
            raise ServiceUnavailableError('Payment provider is unavailable. Please try again later.')

    def create_order(
        self,
        amount: Union[Decimal, float, int],
        currency: str = 'INR',
        receipt: Optional[str] = None,
        notes: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Create a payment order

        Args:
            amount: Amount in currency units (converted to paise)
            currency: ISO currency code
            receipt: Merchant receipt id (max 40 chars)
            notes: Key/value metadata stored with the order

        Returns:
            Dict with id, amount (smallest unit), currency, receipt, status
        """
        if not self.is_available():
            raise ServiceUnavailableError(
                'Payment gateway is not configured. Please set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET.'
            )

        try:
            amount_minor = int(to_money(amount) * 100)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError('Order amount must be a number')
        if amount_minor <= 0:
            raise ValidationError('Order amount must be positive')

        data = {
            'amount': amount_minor,
            'currency': currency,
            'receipt': (receipt or f"rcpt_{uuid.uuid4().hex[:12]}")[:40],
            'notes': {k: str(v) for k, v in (notes or {}).items()}
        }

        result = self._make_request('orders', data)
        if not result.get('id'):
            raise ServiceUnavailableError('Payment provider returned no order id')

        logger.info(f"Created payment order {result['id']} for {amount} {currency}")
        return {
            'id': result['id'],
            'amount': result.get('amount', amount_minor),
            'currency': result.get('currency', currency),
            'receipt': result.get('receipt', data['receipt']),
            'status': result.get('status', 'created')
        }

    @staticmethod
    def compute_signature(order_id: str, payment_id: str, secret: str) -> str:
        message = f"{order_id}|{payment_id}"
        return hmac.new(
            secret.encode('utf-8'),
            message.encode('utf-8'),
            hashlib.sha256
        ).hexdigest()

    def verify_signature(self, order_id: str, payment_id: str, signature: str,
                         shared_secret: Optional[str] = None) -> bool:
        """
        Verify a checkout signature

        Raises:
            InvalidSignatureError: missing identifiers or signature mismatch
            ServiceUnavailableError: no secret available to verify with
        """
        secret = shared_secret or self.config.key_secret
        if not secret:
            raise ServiceUnavailableError('Payment verification is not configured')

        if not order_id or not payment_id or not signature or not isinstance(signature, str):
            raise InvalidSignatureError('Payment signature is missing')

        expected = self.compute_signature(str(order_id), str(payment_id), secret)
        if not hmac.compare_digest(expected, signature):
            raise InvalidSignatureError('Payment verification failed: invalid signature')
        return True


def get_escrow_client() -> EscrowGatewayClient:
    """Get escrow gateway client instance"""
    return EscrowGatewayClient()


# ============================================================================
# COMMISSION POLICY
# ============================================================================

# Version 2: the freelancer receives the full agreed price; the platform
# earns through subscriptions only. Version 1 took a 10% fee at release.
COMMISSION_POLICY_VERSION = 2
PLATFORM_FEE_PERCENT = Decimal('0')


def calculate_platform_fee(amount) -> Decimal:
    """Platform fee withheld from the freelancer's receivable amount"""
    return to_money(to_money(amount) * PLATFORM_FEE_PERCENT / 100)


def calculate_freelancer_receivable(amount) -> Decimal:
    return to_money(amount) - calculate_platform_fee(amount)


# ============================================================================
# PAYMENT RECORDS
# ============================================================================

PAYMENT_TRANSITIONS = {
    'pending': {'processing', 'failed', 'rejected'},
    'processing': {'completed', 'failed', 'rejected'},
    'completed': set(),
    'refunded': set(),
    'failed': set(),
    'rejected': set(),
}

FINAL_PAYMENT_STATUSES = {status for status, targets in PAYMENT_TRANSITIONS.items() if not targets}


def generate_payment_reference(prefix='ESC'):
    date_part = datetime.utcnow().strftime('%Y%m%d')
    return f"{prefix}-{date_part}-{uuid.uuid4().hex[:10].upper()}"


def record_escrow_order(order, payer_id, payee_id, gig_id, application_id, amount, metadata=None):
    """Store a pending escrow Payment for a freshly created provider order"""
    amount = to_money(amount)
    meta = {'commission_policy_version': COMMISSION_POLICY_VERSION,
            'platform_fee': calculate_platform_fee(amount)}
    meta.update(metadata or {})
    # Decimals go into the JSON column as strings
    meta = {k: str(v) if isinstance(v, Decimal) else v for k, v in meta.items()}

    payment = Payment(
        reference_number=generate_payment_reference(),
        payer_id=payer_id,
        payee_id=payee_id,
        gig_id=gig_id,
        application_id=application_id,
        amount=amount,
        currency=order.get('currency', 'INR'),
        type='gig_escrow',
        status='pending',
        description=f"Escrow for gig {gig_id}",
        provider_order_id=order['id'],
        meta=meta
    )
    db.session.add(payment)
    db.session.flush()
    db.session.add(PaymentStatusHistory(payment_id=payment.id, status='pending',
                                        description='Payment gig_escrow initiated'))
    return payment


def advance_payment(payment: Payment, new_status: str, description: Optional[str] = None, **values):
    """
    Move a payment forward along PAYMENT_TRANSITIONS.

    The UPDATE is conditional on the status the caller last saw, so a
    concurrent writer makes this raise instead of silently overwriting.
    Does not commit.
    """
    current = payment.status
    if current in FINAL_PAYMENT_STATUSES:
        raise ConflictError(f'Payment {payment.reference_number} is {current} and can no longer change')
    if new_status not in PAYMENT_TRANSITIONS.get(current, set()):
        raise ConflictError(f'Payment cannot move from {current} to {new_status}')

    updates = {Payment.status: new_status}
    for key, value in values.items():
        updates[getattr(Payment, key)] = value

    updated = Payment.query.filter(
        Payment.id == payment.id,
        Payment.status == current
    ).update(updates, synchronize_session=False)
    if updated != 1:
        raise ConflictError('Payment was modified concurrently')

    db.session.add(PaymentStatusHistory(
        payment_id=payment.id,
        status=new_status,
        description=description or f'Status changed to {new_status}'
    ))
    db.session.flush()
    db.session.refresh(payment)
    return payment


def payment_history(user, page=1, per_page=10, payment_type=None, status=None):
    """
    Payments the user made or received, newest first.

    Companies see the escrow charges they paid; freelancers see escrow
    payments made to them and their own withdrawals.
    """
    query = Payment.query.filter(db.or_(Payment.payer_id == user.id, Payment.payee_id == user.id))
    if payment_type:
        query = query.filter(Payment.type == payment_type)
    if status:
        query = query.filter(Payment.status == status)

    pagination = query.order_by(Payment.created_at.desc(), Payment.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    totals = dict(
        db.session.query(Payment.status, db.func.coalesce(db.func.sum(Payment.amount), 0))
        .filter(db.or_(Payment.payer_id == user.id, Payment.payee_id == user.id))
        .group_by(Payment.status)
        .all()
    )

    return {
        'payments': [p.to_dict() for p in pagination.items],
        'total': pagination.total,
        'pages': pagination.pages,
        'current_page': page,
        'stats': {
            'total_completed': float(totals.get('completed', 0)),
            'total_pending': float(totals.get('pending', 0) + totals.get('processing', 0))
        }
    }
