"""Wallet ledger: credits, withdrawals and admin payout decisions"""
from decimal import Decimal
from types import SimpleNamespace

import pytest

import ledger
from errors import ConflictError, ForbiddenError, NotFoundError, RateLimitedError, ValidationError
from models import db, AuditLog, Notification, Payment, Wallet, WalletTransaction

BANK = {
    'account_holder_name': 'Asha Rao',
    'account_number': '123456789012',
    'ifsc_code': 'HDFC0001234',
    'bank_name': 'HDFC Bank'
}


@pytest.fixture
def freelancer(make_user):
    return make_user('freelancer')


def assert_wallet_identity(wallet):
    db.session.refresh(wallet)
    assert wallet.balance == wallet.total_earned - wallet.total_withdrawn
    assert wallet.balance >= 0


def test_credit_increases_balance_and_earned(freelancer):
    txn = ledger.credit(freelancer.id, 1500, 'project:1')

    wallet = Wallet.query.filter_by(user_id=freelancer.id).one()
    assert wallet.balance == 1500
    assert wallet.total_earned == 1500
    assert txn.transaction_type == 'credit'
    assert txn.balance_before == 0
    assert txn.balance_after == 1500
    assert_wallet_identity(wallet)
    assert AuditLog.query.filter_by(event_type='wallet_credited').count() == 1


def test_credit_same_reference_only_once(freelancer):
    first = ledger.credit(freelancer.id, 800, 'project:7')
    second = ledger.credit(freelancer.id, 800, 'project:7')

    wallet = Wallet.query.filter_by(user_id=freelancer.id).one()
    assert second.id == first.id
    assert wallet.balance == 800
    assert WalletTransaction.query.filter_by(reference='project:7').count() == 1


@pytest.mark.parametrize('amount', [0, -50, 'abc', None])
def test_credit_rejects_bad_amounts(freelancer, amount):
    with pytest.raises(ValidationError):
        ledger.credit(freelancer.id, amount, 'project:1')


def test_withdrawal_debits_balance_and_creates_pending_payment(freelancer, admin):
    ledger.credit(freelancer.id, 1000, 'project:1')

    withdrawal, wallet = ledger.request_withdrawal(freelancer, 300, BANK)

    assert withdrawal.status == 'pending'
    assert withdrawal.type == 'withdrawal'
    assert withdrawal.reference_number.startswith('WD-')
    assert len(withdrawal.reference_number.split('-')[2]) == 8
    assert wallet.balance == 700
    assert wallet.total_withdrawn == 300
    assert wallet.pending_amount == 300
    assert_wallet_identity(wallet)
    assert [h.status for h in withdrawal.status_history] == ['pending']

    txn = WalletTransaction.query.filter_by(transaction_type='withdrawal').one()
    assert txn.balance_before == 1000
    assert txn.balance_after == 700

    assert Notification.query.filter_by(user_id=freelancer.id, notification_type='withdrawal_requested').count() == 1
    assert Notification.query.filter_by(user_id=admin.id, notification_type='withdrawal_requested').count() == 1


def test_withdrawal_over_balance_is_conflict_and_writes_nothing(freelancer):
    ledger.credit(freelancer.id, 200, 'project:1')

    with pytest.raises(ConflictError):
        ledger.request_withdrawal(freelancer, 500, BANK)
    db.session.rollback()

    wallet = Wallet.query.filter_by(user_id=freelancer.id).one()
    assert wallet.balance == 200
    assert Payment.query.filter_by(type='withdrawal').count() == 0


def test_withdrawal_below_minimum(freelancer):
    ledger.credit(freelancer.id, 1000, 'project:1')
    with pytest.raises(ValidationError):
        ledger.request_withdrawal(freelancer, 99, BANK)


def test_fourth_withdrawal_in_a_day_is_rate_limited(freelancer):
    ledger.credit(freelancer.id, 1000, 'project:1')
    for _ in range(3):
        ledger.request_withdrawal(freelancer, 100, BANK)

    with pytest.raises(RateLimitedError):
        ledger.request_withdrawal(freelancer, 100, BANK)
    db.session.rollback()

    wallet = Wallet.query.filter_by(user_id=freelancer.id).one()
    assert wallet.balance == 700
    assert Payment.query.filter_by(type='withdrawal').count() == 3


def test_withdrawal_requires_complete_payout_details(freelancer):
    ledger.credit(freelancer.id, 1000, 'project:1')
    with pytest.raises(ValidationError):
        ledger.request_withdrawal(freelancer, 200, {'account_holder_name': 'Asha Rao', 'account_number': '1234'})


def test_withdrawal_uses_saved_upi_id(make_user):
    freelancer = make_user('freelancer', bank_account_holder='Asha Rao', upi_id='asharao@okbank')
    ledger.credit(freelancer.id, 1000, 'project:1')

    withdrawal, _ = ledger.request_withdrawal(freelancer, 250)

    assert withdrawal.upi_id == 'asharao@okbank'
    assert withdrawal.account_holder_name == 'Asha Rao'


def test_blocked_wallet_cannot_withdraw(freelancer):
    ledger.credit(freelancer.id, 1000, 'project:1')
    Wallet.query.filter_by(user_id=freelancer.id).update({'is_blocked': True})
    db.session.commit()

    with pytest.raises(ForbiddenError):
        ledger.request_withdrawal(freelancer, 200, BANK)


def test_only_freelancers_withdraw(company):
    with pytest.raises(ForbiddenError):
        ledger.request_withdrawal(company, 200, BANK)


def test_rejected_withdrawal_restores_exact_balance(freelancer, admin):
    ledger.credit(freelancer.id, 1000, 'project:1')
    withdrawal, _ = ledger.request_withdrawal(freelancer, 400, BANK)

    resolved, changed = ledger.resolve_withdrawal(admin, withdrawal.id, 'reject', note='Name mismatch')

    assert changed is True
    assert resolved.status == 'rejected'
    wallet = Wallet.query.filter_by(user_id=freelancer.id).one()
    db.session.refresh(wallet)
    assert wallet.balance == 1000
    assert wallet.total_withdrawn == 0
    assert wallet.pending_amount == 0
    assert_wallet_identity(wallet)
    assert WalletTransaction.query.filter_by(transaction_type='refund').count() == 1


def test_resolving_twice_is_a_no_op(freelancer, admin):
    ledger.credit(freelancer.id, 1000, 'project:1')
    withdrawal, _ = ledger.request_withdrawal(freelancer, 400, BANK)
    ledger.resolve_withdrawal(admin, withdrawal.id, 'reject')

    again, changed = ledger.resolve_withdrawal(admin, withdrawal.id, 'reject')

    assert changed is False
    assert again.status == 'rejected'
    assert WalletTransaction.query.filter_by(transaction_type='refund').count() == 1
    with pytest.raises(ConflictError):
        ledger.resolve_withdrawal(admin, withdrawal.id, 'approve')


def test_approve_then_complete(freelancer, admin):
    ledger.credit(freelancer.id, 1000, 'project:1')
    withdrawal, _ = ledger.request_withdrawal(freelancer, 400, BANK)

    with pytest.raises(ConflictError):
        ledger.complete_withdrawal(admin, withdrawal.id)

    approved, changed = ledger.resolve_withdrawal(admin, withdrawal.id, 'approve')
    assert changed and approved.status == 'processing'

    completed, changed = ledger.complete_withdrawal(admin, withdrawal.id, transfer_reference='UTR123')
    assert changed and completed.status == 'completed'
    assert completed.transfer_reference == 'UTR123'
    assert [h.status for h in completed.status_history] == ['pending', 'processing', 'completed']

    wallet = Wallet.query.filter_by(user_id=freelancer.id).one()
    db.session.refresh(wallet)
    assert wallet.pending_amount == 0
    assert wallet.balance == 600
    assert_wallet_identity(wallet)

    _, changed = ledger.complete_withdrawal(admin, withdrawal.id)
    assert changed is False
    with pytest.raises(ConflictError):
        ledger.resolve_withdrawal(admin, withdrawal.id, 'reject')


def test_admin_actions_require_admin(freelancer):
    with pytest.raises(ForbiddenError):
        ledger.resolve_withdrawal(freelancer, 1, 'approve')


def test_missing_withdrawal(admin):
    with pytest.raises(NotFoundError):
        ledger.resolve_withdrawal(admin, 999, 'approve')


def test_history_masks_payout_details(freelancer):
    ledger.credit(freelancer.id, 1000, 'project:1')
    ledger.request_withdrawal(freelancer, 150, BANK)

    history = ledger.withdrawal_history(freelancer)

    assert history['total'] == 1
    details = history['withdrawals'][0]['bank_details']
    assert details['account_number'] == '****9012'
    assert history['stats']['pending_count'] == 1
    assert history['stats']['total_amount'] == 150


def test_transactions_newest_first(freelancer):
    ledger.credit(freelancer.id, 500, 'project:1')
    ledger.credit(freelancer.id, 700, 'project:2')

    result = ledger.list_transactions(freelancer, page=1, per_page=10)

    assert [t['reference'] for t in result['transactions']] == ['project:2', 'project:1']
    credits_only = ledger.list_transactions(freelancer, transaction_type='withdrawal')
    assert credits_only['total'] == 0


def test_wallet_summary_for_new_freelancer(freelancer):
    summary = ledger.wallet_summary(freelancer)

    assert summary['balance'] == 0
    assert summary['can_withdraw'] is False
    assert summary['min_withdrawal'] == ledger.MINIMUM_WITHDRAWAL
    assert summary['in_progress_projects'] == []


def test_masking():
    assert ledger.mask_account_number('123') == ''
    assert ledger.mask_upi_id('ab@upi') == 'a***@upi'
    assert ledger.mask_upi_id('asharao@okbank') == 'as****ao@okbank'


def test_fractional_amounts_keep_exact_identity(freelancer):
    ledger.credit(freelancer.id, 100.1, 'project:1')
    ledger.request_withdrawal(freelancer, 100, BANK)
    ledger.credit(freelancer.id, 0.2, 'project:2')

    wallet = Wallet.query.filter_by(user_id=freelancer.id).one()
    assert_wallet_identity(wallet)
    assert wallet.balance == Decimal('0.30')
    assert wallet.total_earned == Decimal('100.30')
    assert wallet.total_withdrawn == Decimal('100.00')


def test_withdrawing_whole_fractional_balance(freelancer):
    ledger.credit(freelancer.id, 100.02, 'project:1')
    ledger.credit(freelancer.id, 0.1, 'project:2')

    withdrawal, wallet = ledger.request_withdrawal(freelancer, 100.12, BANK)

    assert withdrawal.amount == Decimal('100.12')
    assert wallet.balance == Decimal('0.00')
    assert_wallet_identity(wallet)


def test_amounts_are_rounded_to_paise(freelancer):
    txn = ledger.credit(freelancer.id, '250.555', 'project:1')

    assert txn.amount == Decimal('250.56')
    assert txn.balance_after == Decimal('250.56')


def test_transactions_for_freelancer_without_wallet(freelancer):
    result = ledger.list_transactions(freelancer)

    assert result['transactions'] == []
    assert result['total'] == 0
    assert Wallet.query.filter_by(user_id=freelancer.id).count() == 1


def test_withdrawal_reference_format(app):
    reference = ledger.generate_withdrawal_reference()

    prefix, date_part, suffix = reference.split('-')
    assert prefix == 'WD'
    assert len(date_part) == 8 and date_part.isdigit()
    assert len(suffix) == 8 and suffix == suffix.upper()


def test_withdrawal_reference_collisions_are_conflict(freelancer, monkeypatch):
    class FixedUUID:
        hex = 'abcdef0123456789abcdef0123456789'
    monkeypatch.setattr(ledger, 'uuid', SimpleNamespace(uuid4=FixedUUID))
    ledger.credit(freelancer.id, 1000, 'project:1')
    first, _ = ledger.request_withdrawal(freelancer, 200, BANK)
    assert first.reference_number.endswith('-ABCDEF01')

    with pytest.raises(ConflictError):
        ledger.request_withdrawal(freelancer, 200, BANK)
    db.session.rollback()

    assert Payment.query.filter_by(type='withdrawal').count() == 1


def test_bank_details_round_trip(freelancer):
    assert ledger.get_bank_details(freelancer)['account_number'] == ''

    saved = ledger.update_bank_details(freelancer, {
        'account_holder_name': ' Asha Rao ',
        'account_number': '123456789012',
        'ifsc_code': 'hdfc0001234',
        'bank_name': 'HDFC Bank'
    })

    assert saved['account_holder_name'] == 'Asha Rao'
    assert saved['ifsc_code'] == 'HDFC0001234'
    assert saved['upi_id'] == ''
    db.session.refresh(freelancer)
    assert freelancer.bank_ifsc == 'HDFC0001234'


def test_saved_bank_details_fund_withdrawal(freelancer):
    ledger.update_bank_details(freelancer, {'account_holder_name': 'Asha Rao', 'upi_id': 'AshaRao@OkBank'})
    ledger.credit(freelancer.id, 1000, 'project:1')

    withdrawal, _ = ledger.request_withdrawal(freelancer, 150)

    assert withdrawal.upi_id == 'asharao@okbank'


@pytest.mark.parametrize('data', [
    {'account_number': '123456789012', 'ifsc_code': 'HDFC0001234'},
    {'account_holder_name': 'Asha Rao'},
    {'account_holder_name': 'Asha Rao', 'account_number': '123456789012'},
    {'account_holder_name': 'Asha Rao', 'account_number': '12-34', 'ifsc_code': 'HDFC0001234'},
    {'account_holder_name': 'Asha Rao', 'account_number': '123456789012', 'ifsc_code': 'HDFC1234'},
    {'account_holder_name': 'Asha Rao', 'upi_id': 'not-an-upi'},
    {'account_holder_name': 42, 'upi_id': 'asha@okbank'},
    ['not', 'an', 'object'],
])
def test_bad_bank_details_rejected(freelancer, data):
    with pytest.raises(ValidationError):
        ledger.update_bank_details(freelancer, data)


def test_only_freelancers_have_bank_details(company):
    with pytest.raises(ForbiddenError):
        ledger.get_bank_details(company)
    with pytest.raises(ForbiddenError):
        ledger.update_bank_details(company, {'account_holder_name': 'Acme', 'upi_id': 'acme@okbank'})
