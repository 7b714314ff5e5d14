"""
Freelancer wallet ledger.

Amounts are Decimal, quantized to paise, and wallet totals are only
written through a conditional UPDATE guarded on the values read under the
row lock, so two concurrent requests can never overdraw a wallet or
credit the same source twice. ``balance == total_earned - total_withdrawn``
holds exactly after every operation: a withdrawal is counted as withdrawn
the moment it is requested and is taken back out of ``total_withdrawn`` if
an admin rejects it.
"""

import logging
import re
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError

from audit_logger import get_audit_logger
from errors import (
    ConflictError, ForbiddenError, NotFoundError, RateLimitedError, ValidationError
)
from models import db, to_money, Application, Gig, Payment, PaymentStatusHistory, Wallet, WalletTransaction
from notification_service import notify, notify_admins

logger = logging.getLogger(__name__)

MINIMUM_WITHDRAWAL = 100
DAILY_WITHDRAWAL_LIMIT = 3
WITHDRAWAL_WINDOW = timedelta(hours=24)
ESTIMATED_PROCESSING_TIME = '7 business days'

ACCOUNT_NUMBER_PATTERN = re.compile(r'^\d{9,18}$')
IFSC_PATTERN = re.compile(r'^[A-Z]{4}0[A-Z0-9]{6}$')
UPI_PATTERN = re.compile(r'^[\w.-]+@[\w.-]+$')


def get_or_create_wallet(user_id):
    """Fetch the user's wallet, creating an empty one on first use"""
    wallet = Wallet.query.filter_by(user_id=user_id).first()
    if wallet:
        return wallet

    try:
        with db.session.begin_nested():
            wallet = Wallet(user_id=user_id, balance=0, total_earned=0,
                            total_withdrawn=0, pending_amount=0)
            db.session.add(wallet)
    except IntegrityError:
        # Created concurrently
        wallet = Wallet.query.filter_by(user_id=user_id).first()
    return wallet


def _lock_wallet(user_id):
    wallet = get_or_create_wallet(user_id)
    return Wallet.query.filter_by(id=wallet.id).with_for_update().populate_existing().one()


def _apply_to_wallet(wallet, **deltas):
    """
    Add ``deltas`` to the locked wallet's amount columns.

    The new totals are computed in Decimal and the UPDATE only matches if
    every touched column still holds the value read under the lock.
    Does not commit.
    """
    conditions = [Wallet.id == wallet.id]
    values = {Wallet.updated_at: datetime.utcnow()}
    for field, delta in deltas.items():
        column = getattr(Wallet, field)
        current = getattr(wallet, field)
        conditions.append(column == current)
        values[column] = current + delta

    updated = Wallet.query.filter(*conditions).update(values, synchronize_session=False)
    if updated != 1:
        raise ConflictError('Wallet was modified by another request. Please try again.')
    db.session.refresh(wallet)
    return wallet


def _parse_amount(amount):
    try:
        return to_money(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError('Amount must be a number')


def generate_withdrawal_reference():
    """WD-YYYYMMDD-XXXXXXXX, unique across payments"""
    date_part = datetime.utcnow().strftime('%Y%m%d')
    for _ in range(10):
        reference = f"WD-{date_part}-{uuid.uuid4().hex[:8].upper()}"
        if not Payment.query.filter_by(reference_number=reference).first():
            return reference
    raise ConflictError('Could not allocate a withdrawal reference. Please try again.')


# ============================================================================
# CREDITS
# ============================================================================

def credit(freelancer_id, amount, source_ref, description=None, commit=True):
    """
    Credit earnings to a freelancer's wallet.

    ``source_ref`` identifies what is being paid for (e.g. ``project:12``).
    Crediting the same reference twice returns the original transaction and
    leaves the balance untouched.

    Args:
        freelancer_id: Wallet owner
        amount: Positive amount in INR
        source_ref: Idempotency reference for this credit
        description: Human-readable line for the statement
        commit: False when the caller owns the surrounding transaction

    Returns:
        WalletTransaction
    """
    amount = _parse_amount(amount)
    if amount <= 0:
        raise ValidationError('Credit amount must be positive')
    if not source_ref:
        raise ValidationError('A source reference is required for credits')

    wallet = _lock_wallet(freelancer_id)

    existing = WalletTransaction.query.filter_by(
        wallet_id=wallet.id, transaction_type='credit', reference=source_ref
    ).first()
    if existing:
        logger.info(f"Credit {source_ref} already applied to wallet {wallet.id}, skipping")
        return existing

    balance_before = wallet.balance
    _apply_to_wallet(wallet, balance=amount, total_earned=amount)

    transaction = WalletTransaction(
        wallet_id=wallet.id,
        transaction_type='credit',
        amount=amount,
        balance_before=balance_before,
        balance_after=wallet.balance,
        description=description or f'Earnings credited ({source_ref})',
        reference=source_ref
    )
    db.session.add(transaction)

    if commit:
        db.session.commit()
        _audit_credit(freelancer_id, amount, source_ref)
    return transaction


def _audit_credit(freelancer_id, amount, source_ref):
    audit = get_audit_logger()
    if audit:
        audit.log_financial('wallet_credited', f'Wallet credited for {source_ref}', amount,
                            'wallet', freelancer_id, user_id=freelancer_id)


# ============================================================================
# WITHDRAWALS
# ============================================================================

def _resolve_payout_details(user, bank_details):
    """Merge request details over the user's saved payout details"""
    bank_details = bank_details or {}
    if not isinstance(bank_details, dict):
        raise ValidationError('Bank details must be an object')

    details = {
        'account_holder_name': bank_details.get('account_holder_name') or user.bank_account_holder,
        'account_number': bank_details.get('account_number') or user.bank_account_number,
        'ifsc_code': bank_details.get('ifsc_code') or user.bank_ifsc,
        'bank_name': bank_details.get('bank_name') or user.bank_name,
        'upi_id': bank_details.get('upi_id') or user.upi_id
    }
    details = {k: (v.strip() if isinstance(v, str) else v) for k, v in details.items()}

    if not details['account_holder_name']:
        raise ValidationError('Bank details are required')

    has_complete_bank = bool(details['account_number'] and details['ifsc_code'])
    has_upi = bool(details['upi_id'])
    if not has_complete_bank and not has_upi:
        raise ValidationError('Either complete bank details or UPI ID required')

    return details


def get_bank_details(freelancer):
    """Saved payout details, used when a withdrawal request omits them"""
    if freelancer.role != 'freelancer':
        raise ForbiddenError('Only freelancers can access bank details')
    return {
        'account_holder_name': freelancer.bank_account_holder or '',
        'account_number': freelancer.bank_account_number or '',
        'ifsc_code': freelancer.bank_ifsc or '',
        'bank_name': freelancer.bank_name or '',
        'upi_id': freelancer.upi_id or ''
    }


def update_bank_details(freelancer, data):
    """
    Replace the freelancer's saved payout details.

    An account holder name is required, plus an account number with IFSC
    code or a UPI ID.
    """
    if freelancer.role != 'freelancer':
        raise ForbiddenError('Only freelancers can update bank details')
    if not isinstance(data, dict):
        raise ValidationError('Bank details must be an object')

    def field(name):
        value = data.get(name)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f'{name} must be text')
        return (value or '').strip()

    holder = field('account_holder_name')
    account_number = field('account_number')
    ifsc_code = field('ifsc_code').upper()
    bank_name = field('bank_name')
    upi_id = field('upi_id').lower()

    if not holder:
        raise ValidationError('Account holder name is required')
    if not account_number and not upi_id:
        raise ValidationError('Either account number or UPI ID is required')
    if account_number and not ifsc_code:
        raise ValidationError('IFSC code is required when using account number')
    if account_number and not ACCOUNT_NUMBER_PATTERN.match(account_number):
        raise ValidationError('Invalid account number format (9-18 digits)')
    if ifsc_code and not IFSC_PATTERN.match(ifsc_code):
        raise ValidationError('Invalid IFSC code format')
    if upi_id and not UPI_PATTERN.match(upi_id):
        raise ValidationError('Invalid UPI ID format')

    freelancer.bank_account_holder = holder[:120]
    freelancer.bank_account_number = account_number or None
    freelancer.bank_ifsc = ifsc_code or None
    freelancer.bank_name = bank_name[:100] or None
    freelancer.upi_id = upi_id or None
    db.session.commit()

    logger.info(f"User {freelancer.id} updated payout details")
    return get_bank_details(freelancer)


def count_recent_withdrawals(user_id, now=None):
    """Withdrawal requests created by the user inside the rate-limit window"""
    now = now or datetime.utcnow()
    return Payment.query.filter(
        Payment.payer_id == user_id,
        Payment.type == 'withdrawal',
        Payment.created_at >= now - WITHDRAWAL_WINDOW
    ).count()


def request_withdrawal(freelancer, amount, bank_details=None):
    """
    Request a withdrawal of wallet balance to a bank account or UPI ID.

    The balance is debited immediately and a pending withdrawal Payment is
    created; an admin later approves (then completes) or rejects it.

    Returns:
        (Payment, Wallet)
    """
    if freelancer.role != 'freelancer':
        raise ForbiddenError('Only freelancers can request withdrawals')

    amount = _parse_amount(amount)
    if amount < MINIMUM_WITHDRAWAL:
        raise ValidationError(f'Minimum withdrawal amount is ₹{MINIMUM_WITHDRAWAL}')

    details = _resolve_payout_details(freelancer, bank_details)

    # Serializes this freelancer's withdrawals so the windowed count is consistent
    wallet = _lock_wallet(freelancer.id)
    if wallet.is_blocked:
        raise ForbiddenError('Wallet is blocked. Please contact support.')

    recent = count_recent_withdrawals(freelancer.id)
    if recent >= DAILY_WITHDRAWAL_LIMIT:
        raise RateLimitedError(f'Daily withdrawal limit ({DAILY_WITHDRAWAL_LIMIT}) reached')

    balance_before = wallet.balance
    if amount > balance_before:
        raise ConflictError(
            f'Insufficient balance. Available: ₹{balance_before}, Requested: ₹{amount}'
        )

    # Guarded on the balance just checked, so a concurrent debit cannot overdraw
    _apply_to_wallet(wallet, balance=-amount, total_withdrawn=amount, pending_amount=amount)

    reference = generate_withdrawal_reference()
    withdrawal = Payment(
        reference_number=reference,
        payer_id=freelancer.id,
        payee_id=freelancer.id,
        amount=amount,
        currency=wallet.currency,
        type='withdrawal',
        status='pending',
        description=f'Withdrawal request by {freelancer.display_name} for ₹{amount}',
        account_holder_name=details['account_holder_name'],
        account_number=details['account_number'],
        ifsc_code=details['ifsc_code'],
        bank_name=details['bank_name'],
        upi_id=details['upi_id'],
        meta={
            'available_balance_before': str(balance_before),
            'total_earned_at_request': str(wallet.total_earned)
        }
    )
    db.session.add(withdrawal)
    db.session.flush()
    db.session.add(PaymentStatusHistory(
        payment_id=withdrawal.id, status='pending',
        description='Withdrawal request submitted by freelancer'
    ))
    db.session.add(WalletTransaction(
        wallet_id=wallet.id,
        transaction_type='withdrawal',
        amount=amount,
        balance_before=balance_before,
        balance_after=wallet.balance,
        description=f'Withdrawal request {reference}',
        reference=reference,
        payment_id=withdrawal.id
    ))
    db.session.commit()

    logger.info(f"Withdrawal {reference} requested by user {freelancer.id} for {amount}")
    audit = get_audit_logger()
    if audit:
        audit.log_financial('withdrawal_requested', f'Withdrawal {reference} requested', amount,
                            'payment', withdrawal.id, user_id=freelancer.id)

    notify(freelancer.id, 'withdrawal_requested', {
        'amount': amount,
        'reference': reference,
        'related_id': withdrawal.id
    })
    notify_admins('withdrawal_requested', {
        'amount': amount,
        'reference': reference,
        'freelancer_name': freelancer.display_name,
        'related_id': withdrawal.id,
        'admin': True
    })
    return withdrawal, wallet


def _get_withdrawal(withdrawal_id, lock=False):
    query = Payment.query.filter_by(id=withdrawal_id, type='withdrawal')
    if lock:
        query = query.with_for_update()
    withdrawal = query.first()
    if not withdrawal:
        raise NotFoundError('Withdrawal not found')
    return withdrawal


def _transition_withdrawal(withdrawal, from_statuses, to_status, description, **values):
    """Move a withdrawal forward only if it is still in one of ``from_statuses``"""
    values[Payment.status] = to_status
    updated = Payment.query.filter(
        Payment.id == withdrawal.id,
        Payment.status.in_(from_statuses)
    ).update(values, synchronize_session=False)
    if updated != 1:
        return False
    db.session.add(PaymentStatusHistory(payment_id=withdrawal.id, status=to_status,
                                        description=description))
    return True


def resolve_withdrawal(admin, withdrawal_id, outcome, note=None):
    """
    Admin decision on a withdrawal request.

    ``approve`` moves a pending withdrawal to processing. ``reject`` moves a
    pending or processing withdrawal to rejected and restores the exact
    amount to the freelancer's balance. Repeating a decision that already
    took effect returns the record unchanged.

    Returns:
        (Payment, changed)
    """
    if not admin or not admin.is_admin:
        raise ForbiddenError('Forbidden - Admin access required')
    if outcome not in ('approve', 'reject'):
        raise ValidationError('Outcome must be approve or reject')

    withdrawal = _get_withdrawal(withdrawal_id, lock=True)

    if outcome == 'approve':
        if withdrawal.status in ('processing', 'completed'):
            return withdrawal, False
        if withdrawal.status != 'pending':
            raise ConflictError(f'Withdrawal cannot be approved (status: {withdrawal.status})')

        values = {Payment.processed_at: datetime.utcnow()}
        if note:
            values[Payment.admin_notes] = note
        if not _transition_withdrawal(withdrawal, ['pending'], 'processing',
                                      'Approved by admin, transfer in progress', **values):
            db.session.rollback()
            return _replayed_resolution(withdrawal_id, outcome)
        db.session.commit()
        db.session.refresh(withdrawal)
    else:
        if withdrawal.status == 'rejected':
            return withdrawal, False
        if withdrawal.status not in ('pending', 'processing'):
            raise ConflictError(f'Withdrawal cannot be rejected (status: {withdrawal.status})')

        values = {Payment.processed_at: datetime.utcnow()}
        if note:
            values[Payment.admin_notes] = note
        if not _transition_withdrawal(withdrawal, ['pending', 'processing'], 'rejected',
                                      note or 'Rejected by admin, amount returned to wallet', **values):
            db.session.rollback()
            return _replayed_resolution(withdrawal_id, outcome)
        _restore_withdrawn_amount(withdrawal)
        db.session.commit()
        db.session.refresh(withdrawal)

    logger.info(f"Withdrawal {withdrawal.reference_number} {withdrawal.status} by admin {admin.id}")
    audit = get_audit_logger()
    if audit:
        audit.log_financial(f'withdrawal_{withdrawal.status}',
                            f'Withdrawal {withdrawal.reference_number} {withdrawal.status}',
                            withdrawal.amount, 'payment', withdrawal.id, user_id=admin.id)

    notify(withdrawal.payer_id, 'withdrawal_resolved', {
        'amount': withdrawal.amount,
        'reference': withdrawal.reference_number,
        'status': withdrawal.status,
        'note': note,
        'related_id': withdrawal.id
    })
    return withdrawal, True


def _replayed_resolution(withdrawal_id, outcome):
    """A concurrent admin call moved the record first"""
    withdrawal = _get_withdrawal(withdrawal_id)
    db.session.refresh(withdrawal)
    settled = {'approve': ('processing', 'completed'), 'reject': ('rejected',)}[outcome]
    if withdrawal.status in settled:
        return withdrawal, False
    raise ConflictError(f'Withdrawal was already resolved (status: {withdrawal.status})')


def _restore_withdrawn_amount(withdrawal):
    wallet = _lock_wallet(withdrawal.payer_id)
    balance_before = wallet.balance
    amount = withdrawal.amount
    _apply_to_wallet(wallet, balance=amount, total_withdrawn=-amount, pending_amount=-amount)

    db.session.add(WalletTransaction(
        wallet_id=wallet.id,
        transaction_type='refund',
        amount=withdrawal.amount,
        balance_before=balance_before,
        balance_after=wallet.balance,
        description=f'Withdrawal {withdrawal.reference_number} rejected, amount returned',
        reference=withdrawal.reference_number,
        payment_id=withdrawal.id
    ))


def complete_withdrawal(admin, withdrawal_id, transfer_reference=None):
    """
    Mark a processing withdrawal as paid out.

    Returns:
        (Payment, changed)
    """
    if not admin or not admin.is_admin:
        raise ForbiddenError('Forbidden - Admin access required')

    withdrawal = _get_withdrawal(withdrawal_id, lock=True)
    if withdrawal.status == 'completed':
        return withdrawal, False
    if withdrawal.status != 'processing':
        raise ConflictError(f'Only processing withdrawals can be completed (status: {withdrawal.status})')

    now = datetime.utcnow()
    values = {Payment.completed_at: now}
    if transfer_reference:
        values[Payment.transfer_reference] = transfer_reference
    if not _transition_withdrawal(withdrawal, ['processing'], 'completed',
                                  'Transfer completed', **values):
        db.session.rollback()
        withdrawal = _get_withdrawal(withdrawal_id)
        db.session.refresh(withdrawal)
        if withdrawal.status == 'completed':
            return withdrawal, False
        raise ConflictError(f'Withdrawal cannot be completed (status: {withdrawal.status})')

    wallet = _lock_wallet(withdrawal.payer_id)
    _apply_to_wallet(wallet, pending_amount=-withdrawal.amount)
    db.session.commit()
    db.session.refresh(withdrawal)

    audit = get_audit_logger()
    if audit:
        audit.log_financial('withdrawal_completed',
                            f'Withdrawal {withdrawal.reference_number} completed',
                            withdrawal.amount, 'payment', withdrawal.id, user_id=admin.id,
                            details={'transfer_reference': transfer_reference})

    notify(withdrawal.payer_id, 'withdrawal_resolved', {
        'amount': withdrawal.amount,
        'reference': withdrawal.reference_number,
        'status': 'completed',
        'related_id': withdrawal.id
    })
    return withdrawal, True


# ============================================================================
# READ MODELS
# ============================================================================

def mask_account_number(account_number):
    if not account_number or len(account_number) < 4:
        return ''
    return f"****{account_number[-4:]}"


def mask_upi_id(upi_id):
    if not upi_id or '@' not in upi_id:
        return ''
    username, domain = upi_id.split('@', 1)
    if len(username) < 4:
        return f"{username[:1]}***@{domain}"
    return f"{username[:2]}****{username[-2:]}@{domain}"


WITHDRAWAL_STATUS_DESCRIPTIONS = {
    'pending': 'Your withdrawal request is being reviewed',
    'processing': 'Withdrawal is being processed by the bank',
    'completed': 'Withdrawal completed successfully',
    'failed': 'Withdrawal failed - amount refunded to wallet',
    'rejected': 'Withdrawal rejected - amount refunded to wallet'
}


def wallet_summary(freelancer):
    """Balance overview including money still locked in accepted gigs"""
    if freelancer.role != 'freelancer':
        raise ForbiddenError('Only freelancers can access wallet')

    wallet = get_or_create_wallet(freelancer.id)
    db.session.commit()

    in_progress = db.session.query(Application, Gig).join(Gig, Application.gig_id == Gig.id).filter(
        Application.freelancer_id == freelancer.id,
        Application.status == 'accepted',
        Application.completed_at.is_(None),
        Gig.status.in_(['published', 'active', 'in_progress'])
    ).all()

    projects = []
    money_in_progress = Decimal('0.00')
    for application, gig in in_progress:
        amount = application.final_agreed_budget or gig.budget
        money_in_progress += amount
        projects.append({
            'gig_id': gig.id,
            'gig_title': gig.title,
            'amount': float(amount),
            'status': gig.status,
            'accepted_at': application.accepted_at.isoformat() if application.accepted_at else None
        })

    recent = WalletTransaction.query.filter_by(wallet_id=wallet.id).order_by(
        WalletTransaction.created_at.desc(), WalletTransaction.id.desc()
    ).limit(10).all()

    data = wallet.to_dict()
    data.update({
        'money_in_progress': float(money_in_progress),
        'total_amount': float(wallet.balance + money_in_progress),
        'can_withdraw': wallet.balance >= MINIMUM_WITHDRAWAL and not wallet.is_blocked,
        'min_withdrawal': MINIMUM_WITHDRAWAL,
        'max_withdrawal': float(wallet.balance),
        'in_progress_projects': projects,
        'recent_transactions': [t.to_dict() for t in recent]
    })
    return data


def list_transactions(freelancer, page=1, per_page=20, transaction_type=None):
    if freelancer.role != 'freelancer':
        raise ForbiddenError('Only freelancers can view wallet transactions')

    wallet = get_or_create_wallet(freelancer.id)
    db.session.commit()

    query = WalletTransaction.query.filter_by(wallet_id=wallet.id)
    if transaction_type:
        query = query.filter_by(transaction_type=transaction_type)
    pagination = query.order_by(
        WalletTransaction.created_at.desc(), WalletTransaction.id.desc()
    ).paginate(page=page, per_page=per_page, error_out=False)

    return {
        'transactions': [t.to_dict() for t in pagination.items],
        'total': pagination.total,
        'pages': pagination.pages,
        'current_page': page
    }


def withdrawal_history(freelancer, page=1, per_page=10, status=None):
    if freelancer.role != 'freelancer':
        raise ForbiddenError('Only freelancers can view withdrawal history')

    query = Payment.query.filter_by(payer_id=freelancer.id, type='withdrawal')
    if status:
        query = query.filter_by(status=status)
    pagination = query.order_by(Payment.created_at.desc(), Payment.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    withdrawals = []
    for w in pagination.items:
        withdrawals.append({
            'id': w.id,
            'withdrawal_id': w.reference_number,
            'amount': float(w.amount),
            'status': w.status,
            'status_description': WITHDRAWAL_STATUS_DESCRIPTIONS.get(w.status, 'Unknown status'),
            'requested_at': w.created_at.isoformat() if w.created_at else None,
            'processed_at': w.processed_at.isoformat() if w.processed_at else None,
            'completed_at': w.completed_at.isoformat() if w.completed_at else None,
            'bank_details': {
                'account_holder_name': w.account_holder_name,
                'account_number': mask_account_number(w.account_number),
                'bank_name': w.bank_name,
                'upi_id': mask_upi_id(w.upi_id)
            }
        })

    all_withdrawals = Payment.query.filter_by(payer_id=freelancer.id, type='withdrawal')
    stats = {
        'total_requests': all_withdrawals.count(),
        'total_amount': float(db.session.query(db.func.coalesce(db.func.sum(Payment.amount), 0)).filter(
            Payment.payer_id == freelancer.id, Payment.type == 'withdrawal'
        ).scalar()),
        'completed_count': all_withdrawals.filter(Payment.status == 'completed').count(),
        'pending_count': all_withdrawals.filter(Payment.status == 'pending').count()
    }

    return {
        'withdrawals': withdrawals,
        'stats': stats,
        'total': pagination.total,
        'pages': pagination.pages,
        'current_page': page
    }
