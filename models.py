"""
Unjob SQLAlchemy Models
Database entities for the gig-application lifecycle: applications, escrow
payments, project delivery, freelancer wallets and conversations.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import text

db = SQLAlchemy()


def _iso(value):
    return value.isoformat() if value else None


CENT = Decimal('0.01')


def money_column(**kwargs):
    return db.Column(db.Numeric(12, 2), **kwargs)


def to_money(value):
    """Quantize an amount to paise. Raises InvalidOperation on non-numbers."""
    if isinstance(value, bool):
        raise InvalidOperation(f'Not an amount: {value!r}')
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _money(value):
    return float(value) if value is not None else None


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True)
    full_name = db.Column(db.String(120))
    role = db.Column(db.String(20), nullable=False, default='freelancer')  # freelancer, hiring, admin
    # Saved payout details, used when a withdrawal request omits them
    bank_account_holder = db.Column(db.String(120))
    bank_account_number = db.Column(db.String(30))
    bank_ifsc = db.Column(db.String(11))
    bank_name = db.Column(db.String(100))
    upi_id = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def display_name(self):
        return self.full_name or self.username

    @property
    def is_admin(self):
        return self.role == 'admin'

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'full_name': self.full_name,
            'role': self.role
        }


class Subscription(db.Model):
    """Freelancer plan; application usage is counted from Application rows"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    plan = db.Column(db.String(20), nullable=False, default='free')  # free, basic, pro
    billing_cycle = db.Column(db.String(20), default='monthly')  # monthly, yearly, lifetime
    status = db.Column(db.String(20), nullable=False, default='active')  # active, cancelled, expired
    max_applications = db.Column(db.Integer)  # -1 = unlimited, NULL = plan default
    start_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    end_date = db.Column(db.DateTime)


# ---------------------------------------------------------------------------
# Gigs and applications
# ---------------------------------------------------------------------------
class Gig(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    budget = money_column(nullable=False)
    status = db.Column(db.String(20), default='published')  # draft, published, active, in_progress, completed, cancelled
    selected_freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    final_budget = money_column()
    freelancer_receivable_amount = money_column()
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'company_id': self.company_id,
            'title': self.title,
            'budget': _money(self.budget),
            'status': self.status,
            'selected_freelancer_id': self.selected_freelancer_id,
            'final_budget': _money(self.final_budget),
            'freelancer_receivable_amount': _money(self.freelancer_receivable_amount)
        }


class Application(db.Model):
    __table_args__ = (
        db.UniqueConstraint('gig_id', 'freelancer_id', name='unique_application_per_gig'),
        db.CheckConstraint('total_iterations BETWEEN 1 AND 20', name='ck_application_total_iterations'),
        db.CheckConstraint('used_iterations >= 0', name='ck_application_used_iterations'),
        db.CheckConstraint('remaining_iterations = total_iterations - used_iterations',
                           name='ck_application_remaining_iterations'),
        db.CheckConstraint('remaining_iterations >= 0', name='ck_application_remaining_non_negative'),
        # At most one accepted application per gig
        db.Index('uq_application_accepted_per_gig', 'gig_id', unique=True,
                 sqlite_where=text("status = 'accepted'"),
                 postgresql_where=text("status = 'accepted'")),
    )
    id = db.Column(db.Integer, primary_key=True)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending, negotiating, accepted, rejected
    cover_letter = db.Column(db.Text)
    total_iterations = db.Column(db.Integer, nullable=False, default=3)
    used_iterations = db.Column(db.Integer, nullable=False, default=0)
    remaining_iterations = db.Column(db.Integer, nullable=False, default=3)
    final_agreed_budget = money_column()
    # Escrow payment details, set on acceptance
    payment_order_id = db.Column(db.String(100))
    payment_id = db.Column(db.String(100))
    payment_signature = db.Column(db.String(128))
    amount_paid = money_column()
    paid_at = db.Column(db.DateTime)
    rejection_reason = db.Column(db.Text)
    applied_at = db.Column(db.DateTime, default=datetime.utcnow)
    negotiation_started_at = db.Column(db.DateTime)
    accepted_at = db.Column(db.DateTime)
    rejected_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)

    negotiation_events = db.relationship('NegotiationEvent', backref='application', lazy=True,
                                         order_by='NegotiationEvent.id',
                                         cascade='all, delete-orphan')

    def payment_details(self):
        if not self.payment_id:
            return None
        return {
            'order_id': self.payment_order_id,
            'payment_id': self.payment_id,
            'amount_paid': _money(self.amount_paid),
            'agreed_price': _money(self.final_agreed_budget),
            'paid_at': _iso(self.paid_at)
        }

    def to_dict(self, include_history=False):
        data = {
            'id': self.id,
            'gig_id': self.gig_id,
            'freelancer_id': self.freelancer_id,
            'status': self.status,
            'cover_letter': self.cover_letter,
            'total_iterations': self.total_iterations,
            'used_iterations': self.used_iterations,
            'remaining_iterations': self.remaining_iterations,
            'final_agreed_budget': _money(self.final_agreed_budget),
            'payment_details': self.payment_details(),
            'rejection_reason': self.rejection_reason,
            'applied_at': _iso(self.applied_at),
            'negotiation_started_at': _iso(self.negotiation_started_at),
            'accepted_at': _iso(self.accepted_at),
            'rejected_at': _iso(self.rejected_at),
            'completed_at': _iso(self.completed_at)
        }
        if include_history:
            data['negotiation_history'] = [e.to_dict() for e in self.negotiation_events]
        return data


class NegotiationEvent(db.Model):
    """One proposal in an application's negotiation history"""
    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(db.Integer, db.ForeignKey('application.id'), nullable=False)
    proposer = db.Column(db.String(20), nullable=False)  # freelancer, company
    amount = money_column(nullable=False)
    timeline = db.Column(db.String(100))
    terms = db.Column(db.Text)
    outcome = db.Column(db.String(20), nullable=False, default='pending')  # pending, accepted, rejected, countered
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    responded_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'proposer': self.proposer,
            'amount': _money(self.amount),
            'timeline': self.timeline,
            'terms': self.terms,
            'outcome': self.outcome,
            'created_at': _iso(self.created_at),
            'responded_at': _iso(self.responded_at)
        }


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------
class Payment(db.Model):
    """Escrow charges and withdrawals. Status only moves forward."""
    id = db.Column(db.Integer, primary_key=True)
    reference_number = db.Column(db.String(50), unique=True, nullable=False)
    payer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    payee_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'))
    application_id = db.Column(db.Integer, db.ForeignKey('application.id', ondelete='SET NULL'))
    amount = money_column(nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='INR')
    type = db.Column(db.String(20), nullable=False)  # gig_escrow, withdrawal
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending, processing, completed, failed, refunded, rejected
    description = db.Column(db.Text)
    provider_order_id = db.Column(db.String(100), index=True)
    provider_payment_id = db.Column(db.String(100), unique=True)
    provider_signature = db.Column(db.String(128))
    # Withdrawal payout details
    account_holder_name = db.Column(db.String(120))
    account_number = db.Column(db.String(30))
    ifsc_code = db.Column(db.String(11))
    bank_name = db.Column(db.String(100))
    upi_id = db.Column(db.String(100))
    transfer_reference = db.Column(db.String(100))
    admin_notes = db.Column(db.Text)
    meta = db.Column('metadata', db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    processed_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)

    status_history = db.relationship('PaymentStatusHistory', backref='payment', lazy=True,
                                     order_by='PaymentStatusHistory.id')

    def to_dict(self):
        return {
            'id': self.id,
            'reference_number': self.reference_number,
            'payer_id': self.payer_id,
            'payee_id': self.payee_id,
            'gig_id': self.gig_id,
            'amount': _money(self.amount),
            'currency': self.currency,
            'type': self.type,
            'status': self.status,
            'provider_order_id': self.provider_order_id,
            'provider_payment_id': self.provider_payment_id,
            'metadata': self.meta or {},
            'status_history': [h.to_dict() for h in self.status_history],
            'created_at': _iso(self.created_at),
            'processed_at': _iso(self.processed_at),
            'completed_at': _iso(self.completed_at)
        }


class PaymentStatusHistory(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey('payment.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'status': self.status,
            'description': self.description,
            'timestamp': _iso(self.created_at)
        }


# ---------------------------------------------------------------------------
# Project delivery
# ---------------------------------------------------------------------------
class Project(db.Model):
    __table_args__ = (
        db.UniqueConstraint('application_id', name='unique_project_per_application'),
        db.CheckConstraint('iterations_current >= 0', name='ck_project_iterations_current'),
        db.CheckConstraint('iterations_current <= iterations_maximum', name='ck_project_iterations_bound'),
    )
    id = db.Column(db.Integer, primary_key=True)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    application_id = db.Column(db.Integer, db.ForeignKey('application.id'), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    company_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    conversation_id = db.Column(db.Integer, db.ForeignKey('conversation.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    files = db.Column(db.JSON, default=list)
    status = db.Column(db.String(30), nullable=False, default='submitted')  # submitted, under_review, revision_requested, approved, rejected, completed
    iterations_current = db.Column(db.Integer, nullable=False, default=1)
    iterations_maximum = db.Column(db.Integer, nullable=False, default=3)
    payment_amount = money_column(nullable=False, default=0)
    payment_status = db.Column(db.String(20), nullable=False, default='pending')  # pending, escrowed, released, disputed
    company_feedback = db.Column(db.Text)
    submission_count = db.Column(db.Integer, nullable=False, default=1)
    submitted_at = db.Column(db.DateTime, default=datetime.utcnow)
    reviewed_at = db.Column(db.DateTime)
    approved_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    revision_notes = db.relationship('RevisionNote', backref='project', lazy=True,
                                     order_by='RevisionNote.id')

    @property
    def iterations_remaining(self):
        return max(0, self.iterations_maximum - self.iterations_current)

    def to_dict(self):
        return {
            'id': self.id,
            'gig_id': self.gig_id,
            'application_id': self.application_id,
            'freelancer_id': self.freelancer_id,
            'company_id': self.company_id,
            'conversation_id': self.conversation_id,
            'title': self.title,
            'description': self.description,
            'files': self.files or [],
            'status': self.status,
            'iterations': {
                'current': self.iterations_current,
                'maximum': self.iterations_maximum,
                'remaining': self.iterations_remaining
            },
            'payment': {
                'amount': _money(self.payment_amount),
                'status': self.payment_status
            },
            'company_feedback': self.company_feedback,
            'submission_count': self.submission_count,
            'revision_notes': [n.to_dict() for n in self.revision_notes],
            'submitted_at': _iso(self.submitted_at),
            'reviewed_at': _iso(self.reviewed_at),
            'approved_at': _iso(self.approved_at),
            'completed_at': _iso(self.completed_at)
        }


class RevisionNote(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    note = db.Column(db.Text, nullable=False)
    iteration = db.Column(db.Integer, nullable=False)
    added_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    added_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'note': self.note,
            'iteration': self.iteration,
            'added_by': self.added_by,
            'added_at': _iso(self.added_at)
        }


# ---------------------------------------------------------------------------
# Wallet ledger
# ---------------------------------------------------------------------------
class Wallet(db.Model):
    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='ck_wallet_balance_non_negative'),
    )
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    balance = money_column(default=0, nullable=False)
    total_earned = money_column(default=0, nullable=False)
    total_withdrawn = money_column(default=0, nullable=False)
    pending_amount = money_column(default=0, nullable=False)
    currency = db.Column(db.String(3), default='INR', nullable=False)
    is_blocked = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'balance': _money(self.balance),
            'total_earned': _money(self.total_earned),
            'total_withdrawn': _money(self.total_withdrawn),
            'pending_amount': _money(self.pending_amount),
            'currency': self.currency,
            'is_blocked': self.is_blocked
        }


class WalletTransaction(db.Model):
    """Append-only wallet movements"""
    __table_args__ = (
        db.UniqueConstraint('wallet_id', 'transaction_type', 'reference', name='unique_wallet_reference'),
    )
    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey('wallet.id'), nullable=False)
    transaction_type = db.Column(db.String(20), nullable=False)  # credit, withdrawal, refund
    amount = money_column(nullable=False)
    balance_before = money_column(nullable=False)
    balance_after = money_column(nullable=False)
    description = db.Column(db.Text)
    reference = db.Column(db.String(100), nullable=False)
    payment_id = db.Column(db.Integer, db.ForeignKey('payment.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.transaction_type,
            'amount': _money(self.amount),
            'balance_before': _money(self.balance_before),
            'balance_after': _money(self.balance_after),
            'description': self.description,
            'reference': self.reference,
            'created_at': _iso(self.created_at)
        }


# ---------------------------------------------------------------------------
# Conversations and notifications
# ---------------------------------------------------------------------------
class Conversation(db.Model):
    """Messaging thread bound to one (gig, company, freelancer) triple"""
    __table_args__ = (
        db.UniqueConstraint('gig_id', 'company_id', 'freelancer_id', name='unique_conversation_per_pair'),
    )
    id = db.Column(db.Integer, primary_key=True)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    company_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='negotiating')  # negotiating, active, archived, blocked
    negotiation_phase = db.Column(db.String(20), default='initial')  # initial, active, finalizing, completed
    original_budget = money_column()
    final_agreed_price = money_column()
    payment_completed = db.Column(db.Boolean, default=False, nullable=False)
    allow_negotiation = db.Column(db.Boolean, default=True, nullable=False)
    last_activity_at = db.Column(db.DateTime, default=datetime.utcnow)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def has_participant(self, user_id):
        return user_id in (self.company_id, self.freelancer_id)

    def to_dict(self):
        return {
            'id': self.id,
            'gig_id': self.gig_id,
            'company_id': self.company_id,
            'freelancer_id': self.freelancer_id,
            'status': self.status,
            'negotiation_phase': self.negotiation_phase,
            'original_budget': _money(self.original_budget),
            'final_agreed_price': _money(self.final_agreed_price),
            'payment_completed': self.payment_completed,
            'allow_negotiation': self.allow_negotiation,
            'last_activity_at': _iso(self.last_activity_at)
        }


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    notification_type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    link = db.Column(db.String(500))
    related_id = db.Column(db.Integer)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'notification_type': self.notification_type,
            'title': self.title,
            'message': self.message,
            'link': self.link,
            'related_id': self.related_id,
            'is_read': self.is_read,
            'created_at': _iso(self.created_at)
        }


class AuditLog(db.Model):
    """Financial and security audit trail"""
    id = db.Column(db.Integer, primary_key=True)
    event_category = db.Column(db.String(30), nullable=False)  # financial, authorization, system
    event_type = db.Column(db.String(50), nullable=False)
    severity = db.Column(db.String(10), default='medium')
    status = db.Column(db.String(10), default='success')  # success, failure, blocked
    user_id = db.Column(db.Integer)
    ip_address = db.Column(db.String(45))
    action = db.Column(db.String(255), nullable=False)
    resource_type = db.Column(db.String(50))
    resource_id = db.Column(db.String(50))
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'event_category': self.event_category,
            'event_type': self.event_type,
            'severity': self.severity,
            'status': self.status,
            'user_id': self.user_id,
            'ip_address': self.ip_address,
            'action': self.action,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'details': self.details,
            'created_at': _iso(self.created_at)
        }
