"""
Gig application lifecycle.

    pending --(company opens negotiation)--> negotiating --(payment verified)--> accepted
    pending --(company direct-accepts, payment verified)--> accepted
    pending | negotiating --(company rejects, or another freelancer wins)--> rejected

Every status change is a conditional UPDATE guarded by the status the
caller expects, and awarding a gig is a compare-and-swap on
``Gig.selected_freelancer_id IS NULL``. Two racing accept calls therefore
cannot both win, and the loser gets a ConflictError instead of silently
overwriting the winner.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import InvalidOperation

from sqlalchemy.exc import IntegrityError

from audit_logger import get_audit_logger
from conversation_bridge import find_for_pair, open_or_activate
from errors import (
    ConflictError, ForbiddenError, InvalidSignatureError, NotFoundError,
    PaymentRequiredError, ValidationError
)
from escrow_gateway import (
    advance_payment, calculate_freelancer_receivable, get_escrow_client, record_escrow_order
)
from models import db, to_money, Application, Gig, NegotiationEvent, Payment, Subscription, User
from notification_service import notify

logger = logging.getLogger(__name__)

APPLICABLE_GIG_STATUSES = ('published', 'active', 'in_progress')
DEFAULT_ITERATIONS = 3
MIN_ITERATIONS = 1
MAX_ITERATIONS = 20
MAX_COVER_LETTER_LENGTH = 2000
SUBSCRIPTION_GRACE_PERIOD = timedelta(days=7)
UNLIMITED = -1

# plan -> billing cycle -> application allowance
PLAN_APPLICATION_LIMITS = {
    'free': {'monthly': 20, 'yearly': 20, 'lifetime': 20},
    'basic': {'monthly': 200, 'yearly': 2400, 'lifetime': UNLIMITED},
    'pro': {'monthly': UNLIMITED, 'yearly': UNLIMITED, 'lifetime': UNLIMITED},
}

# ============================================================================
# HELPERS
# ============================================================================

def _get_gig(gig_id, lock=False):
    query = Gig.query.filter_by(id=gig_id)
    if lock:
        query = query.with_for_update()
    gig = query.first()
    if not gig:
        raise NotFoundError('Gig not found')
    return gig


def _get_application(gig_id, freelancer_id):
    application = Application.query.filter_by(gig_id=gig_id, freelancer_id=freelancer_id).first()
    if not application:
        raise NotFoundError('Application not found')
    return application


def _require_gig_owner(company, gig):
    if company.role != 'hiring':
        raise ForbiddenError('Only hiring accounts can manage applications')
    if gig.company_id != company.id:
        raise ForbiddenError('Only the gig owner can manage applications')


def _party_for(actor, gig, freelancer_id):
    """Which side of the negotiation ``actor`` is on"""
    if actor.id == gig.company_id and actor.role == 'hiring':
        return 'company'
    if actor.role == 'freelancer' and actor.id == freelancer_id:
        return 'freelancer'
    raise ForbiddenError('Only the gig owner or the applicant can negotiate')


def _parse_positive_amount(value, label='Amount'):
    try:
        amount = to_money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f'{label} must be a number')
    if amount <= 0:
        raise ValidationError(f'{label} must be greater than 0')
    return amount


def _parse_iterations(value):
    if value is None or value == '':
        return DEFAULT_ITERATIONS
    if isinstance(value, bool):
        raise ValidationError(f'Iterations must be between {MIN_ITERATIONS} and {MAX_ITERATIONS}')
    try:
        iterations = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Iterations must be between {MIN_ITERATIONS} and {MAX_ITERATIONS}')
    if isinstance(value, float) and value != iterations:
        raise ValidationError('Iterations must be a whole number')
    if iterations < MIN_ITERATIONS or iterations > MAX_ITERATIONS:
        raise ValidationError(f'Iterations must be between {MIN_ITERATIONS} and {MAX_ITERATIONS}')
    return iterations


def _amounts_differ(a, b):
    return to_money(a) != to_money(b)


def _reject_competitors(gig_id, winner_id, from_statuses, reason):
    """Reject every other application on the gig still in ``from_statuses``"""
    competitors = Application.query.filter(
        Application.gig_id == gig_id,
        Application.id != winner_id,
        Application.status.in_(from_statuses)
    ).with_for_update().all()
    if not competitors:
        return []

    ids = [a.id for a in competitors]
    Application.query.filter(
        Application.id.in_(ids),
        Application.status.in_(from_statuses)
    ).update({
        Application.status: 'rejected',
        Application.rejected_at: datetime.utcnow(),
        Application.rejection_reason: reason
    }, synchronize_session=False)
    NegotiationEvent.query.filter(
        NegotiationEvent.application_id.in_(ids),
        NegotiationEvent.outcome == 'pending'
    ).update({
        NegotiationEvent.outcome: 'rejected',
        NegotiationEvent.responded_at: datetime.utcnow()
    }, synchronize_session=False)

    rejected = [a.freelancer_id for a in competitors]
    for application in competitors:
        db.session.expire(application)
    return rejected


def _notify_rejected(freelancer_ids, gig):
    for freelancer_id in freelancer_ids:
        notify(freelancer_id, 'application_status_changed', {
            'gig_id': gig.id,
            'gig_title': gig.title,
            'status': 'rejected',
            'related_id': gig.id
        })


# ============================================================================
# SUBSCRIPTION QUOTA
# ============================================================================

def plan_application_limit(subscription):
    if subscription.max_applications is not None:
        return subscription.max_applications
    limits = PLAN_APPLICATION_LIMITS.get(subscription.plan, PLAN_APPLICATION_LIMITS['free'])
    return limits.get(subscription.billing_cycle or 'monthly', limits['monthly'])


def applications_used(subscription):
    """Applications counted against the subscription since it started"""
    return Application.query.filter(
        Application.freelancer_id == subscription.user_id,
        Application.applied_at >= subscription.start_date
    ).count()


def check_application_quota(freelancer, now=None):
    """
    Verify the freelancer may submit another application.

    Locks the subscription row so two concurrent applications see a
    consistent count.

    Returns:
        (subscription, used, limit)
    """
    now = now or datetime.utcnow()
    subscription = Subscription.query.filter_by(user_id=freelancer.id).with_for_update().first()
    if not subscription or subscription.status != 'active':
        raise PaymentRequiredError('Active subscription required to apply to gigs')

    if subscription.billing_cycle != 'lifetime' and subscription.end_date:
        if subscription.end_date + SUBSCRIPTION_GRACE_PERIOD < now:
            raise PaymentRequiredError('Your subscription has expired. Please renew to continue applying.')

    limit = plan_application_limit(subscription)
    used = applications_used(subscription)
    if limit != UNLIMITED and used >= limit:
        raise PaymentRequiredError(
            'Application limit reached. Please upgrade your plan to apply to more gigs.',
            details={'used': used, 'limit': limit}
        )
    return subscription, used, limit


# ============================================================================
# APPLY / WITHDRAW
# ============================================================================

def create_application(freelancer, gig_id, iterations=None, cover_letter=None):
    """
    Apply to a gig.

    Returns:
        dict with the new application and the quota usage after applying
    """
    if freelancer.role != 'freelancer':
        raise ForbiddenError('Only freelancers can apply to gigs')

    _, used, limit = check_application_quota(freelancer)
    iterations = _parse_iterations(iterations)

    if cover_letter is not None and not isinstance(cover_letter, str):
        raise ValidationError('Cover letter must be text')
    cover_letter = (cover_letter or '').strip()[:MAX_COVER_LETTER_LENGTH]

    gig = _get_gig(gig_id)
    if gig.status not in APPLICABLE_GIG_STATUSES:
        raise ConflictError('This gig is no longer accepting applications')

    if Application.query.filter_by(gig_id=gig.id, freelancer_id=freelancer.id).first():
        raise ConflictError('You have already applied to this gig')

    application = Application(
        gig_id=gig.id,
        freelancer_id=freelancer.id,
        status='pending',
        cover_letter=cover_letter or f'Application with {iterations} iterations',
        total_iterations=iterations,
        used_iterations=0,
        remaining_iterations=iterations,
        applied_at=datetime.utcnow()
    )
    try:
        with db.session.begin_nested():
            db.session.add(application)
    except IntegrityError:
        raise ConflictError('You have already applied to this gig')
    db.session.commit()

    logger.info(f"User {freelancer.id} applied to gig {gig.id} with {iterations} iterations")
    notify(gig.company_id, 'application_created', {
        'freelancer_name': freelancer.display_name,
        'gig_id': gig.id,
        'gig_title': gig.title,
        'iterations': iterations,
        'related_id': application.id
    })

    used += 1
    return {
        'application': application.to_dict(),
        'applications_used': used,
        'applications_remaining': None if limit == UNLIMITED else max(0, limit - used)
    }


def withdraw_application(freelancer, gig_id):
    """Remove a pending (or already rejected) application, releasing its quota slot"""
    if freelancer.role != 'freelancer':
        raise ForbiddenError('Only freelancers can withdraw applications')

    application = _get_application(gig_id, freelancer.id)
    if application.status in ('accepted', 'negotiating'):
        raise ConflictError(f'Cannot withdraw an application that is {application.status}')

    application_id = application.id
    db.session.expunge(application)
    NegotiationEvent.query.filter_by(application_id=application_id).delete(synchronize_session=False)
    Payment.query.filter_by(application_id=application_id).update(
        {Payment.application_id: None}, synchronize_session=False
    )
    deleted = Application.query.filter(
        Application.id == application_id,
        Application.status.in_(['pending', 'rejected'])
    ).delete(synchronize_session=False)
    if deleted != 1:
        db.session.rollback()
        raise ConflictError('Application changed while withdrawing. Please refresh and try again.')
    db.session.commit()

    logger.info(f"User {freelancer.id} withdrew application {application_id} from gig {gig_id}")
    subscription = Subscription.query.filter_by(user_id=freelancer.id).first()
    return {
        'application_id': application_id,
        'applications_used': applications_used(subscription) if subscription else None
    }


def list_applications(company, gig_id):
    gig = _get_gig(gig_id)
    _require_gig_owner(company, gig)
    applications = Application.query.filter_by(gig_id=gig.id).order_by(Application.applied_at).all()
    return {
        'gig': gig.to_dict(),
        'applications': [a.to_dict(include_history=True) for a in applications]
    }


# ============================================================================
# NEGOTIATION
# ============================================================================

def accept_application(company, gig_id, freelancer_id, mode='negotiate', final_budget=None):
    """
    Company accepts an application.

    ``negotiate`` opens a negotiation: the application moves to negotiating,
    every other pending application on the gig is rejected and the
    conversation is opened. ``direct`` skips negotiation and creates an
    escrow order for the gig budget; acceptance then happens in
    complete_payment_and_accept.
    """
    if mode == 'direct':
        return create_payment_order(company, gig_id, freelancer_id, mode='direct')
    if mode != 'negotiate':
        raise ValidationError('Mode must be negotiate or direct')

    gig = _get_gig(gig_id)
    _require_gig_owner(company, gig)
    application = _get_application(gig.id, freelancer_id)

    if application.status == 'accepted':
        raise ConflictError('Application already accepted')
    if application.status == 'negotiating':
        raise ConflictError('Negotiation already in progress for this application')
    if application.status == 'rejected':
        raise ConflictError('Application has been rejected')
    if gig.selected_freelancer_id:
        raise ConflictError('A freelancer has already been selected for this gig')
    if final_budget is not None:
        final_budget = _parse_positive_amount(final_budget, 'Final budget')

    now = datetime.utcnow()
    updated = Application.query.filter(
        Application.id == application.id,
        Application.status == 'pending'
    ).update({
        Application.status: 'negotiating',
        Application.negotiation_started_at: now
    }, synchronize_session=False)
    if updated != 1:
        db.session.rollback()
        raise ConflictError('Application was modified by another request')

    rejected = _reject_competitors(gig.id, application.id, ['pending'],
                                   'Another applicant was selected for negotiation')

    if final_budget is not None:
        db.session.add(NegotiationEvent(
            application_id=application.id,
            proposer='company',
            amount=final_budget,
            outcome='pending'
        ))

    conversation = open_or_activate(
        gig.id, gig.company_id, freelancer_id, 'negotiating',
        negotiation_phase='initial',
        original_budget=gig.budget,
        allow_negotiation=True
    )
    db.session.commit()
    db.session.refresh(application)

    logger.info(f"Negotiation opened on gig {gig.id} with freelancer {freelancer_id}")
    notify(freelancer_id, 'application_status_changed', {
        'gig_id': gig.id,
        'gig_title': gig.title,
        'status': 'negotiating',
        'related_id': conversation.id
    })
    _notify_rejected(rejected, gig)

    return {
        'application': application.to_dict(include_history=True),
        'conversation': conversation.to_dict(),
        'rejected_applications': len(rejected)
    }


def propose_terms(actor, gig_id, freelancer_id, amount, timeline=None, terms=None):
    """Add a proposal to a negotiating application; supersedes the open one"""
    gig = _get_gig(gig_id)
    party = _party_for(actor, gig, freelancer_id)
    application = _get_application(gig.id, freelancer_id)
    if application.status != 'negotiating':
        raise ConflictError('Proposals can only be made while negotiating')

    amount = _parse_positive_amount(amount, 'Proposed amount')
    if timeline is not None and not isinstance(timeline, str):
        raise ValidationError('Timeline must be text')
    if terms is not None and not isinstance(terms, str):
        raise ValidationError('Terms must be text')

    now = datetime.utcnow()
    NegotiationEvent.query.filter_by(application_id=application.id, outcome='pending').update({
        NegotiationEvent.outcome: 'countered',
        NegotiationEvent.responded_at: now
    }, synchronize_session=False)

    event = NegotiationEvent(
        application_id=application.id,
        proposer=party,
        amount=amount,
        timeline=(timeline or '').strip()[:100] or None,
        terms=(terms or '').strip() or None,
        outcome='pending',
        created_at=now
    )
    db.session.add(event)
    conversation = open_or_activate(gig.id, gig.company_id, freelancer_id, 'negotiating',
                                    negotiation_phase='active')
    db.session.commit()

    recipient = freelancer_id if party == 'company' else gig.company_id
    notify(recipient, 'negotiation_proposal', {
        'amount': amount,
        'gig_title': gig.title,
        'conversation_id': conversation.id,
        'related_id': event.id
    })
    return {'proposal': event.to_dict(), 'conversation': conversation.to_dict()}


def respond_to_proposal(actor, gig_id, freelancer_id, decision):
    """The counter-party accepts or rejects the open proposal"""
    if decision not in ('accept', 'reject'):
        raise ValidationError('Decision must be accept or reject')

    gig = _get_gig(gig_id)
    party = _party_for(actor, gig, freelancer_id)
    application = _get_application(gig.id, freelancer_id)
    if application.status != 'negotiating':
        raise ConflictError('Application is not in negotiation')

    event = NegotiationEvent.query.filter_by(
        application_id=application.id, outcome='pending'
    ).order_by(NegotiationEvent.id.desc()).first()
    if not event:
        raise NotFoundError('No open proposal to respond to')
    if event.proposer == party:
        raise ForbiddenError('You cannot respond to your own proposal')

    now = datetime.utcnow()
    outcome = 'accepted' if decision == 'accept' else 'rejected'
    updated = NegotiationEvent.query.filter(
        NegotiationEvent.id == event.id,
        NegotiationEvent.outcome == 'pending'
    ).update({
        NegotiationEvent.outcome: outcome,
        NegotiationEvent.responded_at: now
    }, synchronize_session=False)
    if updated != 1:
        db.session.rollback()
        raise ConflictError('Proposal was already answered')

    conversation = None
    if outcome == 'accepted':
        agreed = Application.query.filter(
            Application.id == application.id,
            Application.status == 'negotiating'
        ).update({Application.final_agreed_budget: event.amount}, synchronize_session=False)
        if agreed != 1:
            db.session.rollback()
            raise ConflictError('Application is no longer in negotiation')
        conversation = open_or_activate(gig.id, gig.company_id, freelancer_id, 'negotiating',
                                        negotiation_phase='finalizing',
                                        final_agreed_price=event.amount)
    db.session.commit()
    db.session.refresh(event)
    db.session.refresh(application)

    proposer_id = gig.company_id if event.proposer == 'company' else freelancer_id
    notify(proposer_id, 'application_status_changed', {
        'gig_id': gig.id,
        'gig_title': gig.title,
        'status': f'proposal {outcome}',
        'related_id': event.id
    })
    return {
        'proposal': event.to_dict(),
        'application': application.to_dict(),
        'conversation': conversation.to_dict() if conversation else None
    }


# ============================================================================
# ESCROW ORDER + PAYMENT VERIFICATION
# ============================================================================

def create_payment_order(company, gig_id, freelancer_id, mode='negotiate', amount=None):
    """
    Create an escrow order the company pays before the application is accepted.

    ``negotiate`` charges the agreed price of a negotiating application,
    ``direct`` charges the gig budget of a pending one.
    """
    gig = _get_gig(gig_id)
    _require_gig_owner(company, gig)
    application = _get_application(gig.id, freelancer_id)

    if application.status == 'accepted':
        raise ConflictError('Application already accepted')
    if gig.selected_freelancer_id:
        raise ConflictError('A freelancer has already been selected for this gig')

    if mode == 'negotiate':
        if application.status != 'negotiating':
            raise ConflictError('Application is not in negotiation')
        if amount is None:
            amount = application.final_agreed_budget
        if amount is None:
            raise ValidationError('Final agreed price is required')
        amount = _parse_positive_amount(amount, 'Final agreed price')
        if application.final_agreed_budget is not None and _amounts_differ(amount, application.final_agreed_budget):
            raise ValidationError('Amount does not match the agreed price')
        receipt_prefix = 'negotiate'
    elif mode == 'direct':
        if application.status != 'pending':
            raise ConflictError(f'Application cannot be accepted directly (status: {application.status})')
        amount = _parse_positive_amount(gig.budget, 'Gig budget')
        receipt_prefix = 'direct'
    else:
        raise ValidationError('Mode must be negotiate or direct')

    client = get_escrow_client()
    order = client.create_order(
        amount,
        currency='INR',
        receipt=f"{receipt_prefix}_{gig.id}_{freelancer_id}_{uuid.uuid4().hex[:6]}",
        notes={
            'gig_id': gig.id,
            'freelancer_id': freelancer_id,
            'company_id': company.id,
            'type': f'{receipt_prefix}_payment',
            'agreed_price': amount
        }
    )
    payment = record_escrow_order(
        order, company.id, freelancer_id, gig.id, application.id, amount,
        metadata={
            'original_budget': gig.budget,
            'final_agreed_budget': amount,
            'was_negotiated': mode == 'negotiate'
        }
    )
    db.session.commit()

    logger.info(f"Escrow order {order['id']} created for gig {gig.id} / freelancer {freelancer_id}")
    return {
        'order': order,
        'key_id': client.config.key_id,
        'amount': float(amount),
        'payment_reference': payment.reference_number
    }


def complete_payment_and_accept(company, gig_id, freelancer_id, order_id, payment_id, signature,
                                agreed_amount=None, mode='negotiate'):
    """
    Verify the client-reported payment and accept the application.

    Write order: award the gig (compare-and-swap), accept the application,
    reject competitors, commit; then activate the conversation; then mark
    the escrow Payment completed last. A replay with the same order id
    returns the existing result and fills in whatever the first call did
    not get to write, without notifying anyone again.
    """
    if mode not in ('negotiate', 'direct'):
        raise ValidationError('Mode must be negotiate or direct')

    gig = _get_gig(gig_id)
    _require_gig_owner(company, gig)
    application = _get_application(gig.id, freelancer_id)

    try:
        get_escrow_client().verify_signature(order_id, payment_id, signature)
    except InvalidSignatureError:
        logger.warning(f"Rejected payment signature for order {order_id} on gig {gig.id}")
        audit = get_audit_logger()
        if audit:
            audit.log_signature_failure(str(order_id), str(payment_id), user_id=company.id)
        raise

    if application.status == 'accepted':
        if application.payment_order_id == order_id:
            return _replay_acceptance(gig, application)
        raise ConflictError('Application already accepted')
    if application.status == 'rejected':
        raise ConflictError('Application has been rejected')

    expected_status = 'negotiating' if mode == 'negotiate' else 'pending'
    if application.status != expected_status:
        raise ConflictError(f'Application cannot be accepted from status {application.status}')

    if mode == 'direct':
        amount = _parse_positive_amount(gig.budget, 'Gig budget')
    else:
        if agreed_amount is None:
            agreed_amount = application.final_agreed_budget
        if agreed_amount is None:
            raise ValidationError('Final agreed price is required')
        amount = _parse_positive_amount(agreed_amount, 'Final agreed price')
        if application.final_agreed_budget is not None and _amounts_differ(amount, application.final_agreed_budget):
            raise ValidationError('Paid amount does not match the agreed price')

    order_record = Payment.query.filter_by(provider_order_id=order_id, type='gig_escrow').first()
    if order_record:
        if order_record.gig_id != gig.id or order_record.payee_id != freelancer_id:
            raise ValidationError('Payment order does not belong to this application')
        if order_record.status not in ('pending', 'processing'):
            raise ConflictError(f'Payment order is already {order_record.status}')
        if _amounts_differ(order_record.amount, amount):
            raise ValidationError('Paid amount does not match the payment order')

    now = datetime.utcnow()
    claimed = Gig.query.filter(
        Gig.id == gig.id,
        Gig.selected_freelancer_id.is_(None)
    ).update({
        Gig.selected_freelancer_id: freelancer_id,
        Gig.final_budget: amount,
        Gig.freelancer_receivable_amount: calculate_freelancer_receivable(amount),
        Gig.status: 'in_progress'
    }, synchronize_session=False)
    if claimed != 1:
        db.session.rollback()
        db.session.refresh(application)
        if application.status == 'accepted' and application.payment_order_id == order_id:
            return _replay_acceptance(gig, application)
        raise ConflictError('Another freelancer has already been selected for this gig')

    accepted = Application.query.filter(
        Application.id == application.id,
        Application.status == expected_status
    ).update({
        Application.status: 'accepted',
        Application.final_agreed_budget: amount,
        Application.payment_order_id: order_id,
        Application.payment_id: payment_id,
        Application.payment_signature: signature,
        Application.amount_paid: amount,
        Application.paid_at: now,
        Application.accepted_at: now
    }, synchronize_session=False)
    if accepted != 1:
        db.session.rollback()
        raise ConflictError('Application was modified by another request')

    rejected = _reject_competitors(gig.id, application.id, ['pending', 'negotiating'],
                                   'Another freelancer was selected for this gig')
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('Another application has already been accepted for this gig')

    db.session.refresh(gig)
    db.session.refresh(application)
    logger.info(f"Application {application.id} accepted on gig {gig.id} (order {order_id})")

    conversation, payment = _finalize_acceptance(gig, application, allow_negotiation=(mode == 'negotiate'))

    audit = get_audit_logger()
    if audit:
        audit.log_financial('escrow_verified', f'Escrow payment verified for gig {gig.id}', amount,
                            'application', application.id, user_id=company.id,
                            details={'order_id': order_id, 'payment_id': payment_id,
                                     'payment_recorded': payment is not None})

    freelancer = db.session.get(User, freelancer_id)
    payload = {
        'amount': amount,
        'gig_id': gig.id,
        'gig_title': gig.title,
        'conversation_id': conversation.id if conversation else '',
        'related_id': gig.id
    }
    notify(freelancer_id, 'application_status_changed', dict(payload, status='accepted'))
    notify(freelancer_id, 'payment_completed', payload)
    notify(company.id, 'payment_completed', payload)
    _notify_rejected(rejected, gig)

    return _acceptance_result(gig, application, conversation, payment,
                              already_processed=False, rejected_count=len(rejected),
                              freelancer=freelancer)


def _finalize_acceptance(gig, application, allow_negotiation=True):
    """
    Conversation activation and the completed Payment record, in that order.

    Runs after the acceptance is committed. If it fails the acceptance
    stands and a replay of the same verification call finishes the job.
    """
    conversation = None
    payment = None
    try:
        conversation = open_or_activate(
            gig.id, gig.company_id, application.freelancer_id, 'active',
            negotiation_phase='completed',
            original_budget=gig.budget,
            final_agreed_price=application.final_agreed_budget,
            payment_completed=True,
            allow_negotiation=allow_negotiation
        )
        db.session.commit()

        payment = _complete_escrow_payment(gig, application)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Finalizing acceptance of application {application.id} failed: {str(e)}")
        conversation = find_for_pair(gig.id, gig.company_id, application.freelancer_id)
        payment = None
    return conversation, payment


def _complete_escrow_payment(gig, application):
    payment = Payment.query.filter_by(
        provider_order_id=application.payment_order_id, type='gig_escrow'
    ).with_for_update().first()
    if payment is None:
        payment = record_escrow_order(
            {'id': application.payment_order_id, 'currency': 'INR'},
            gig.company_id, application.freelancer_id, gig.id, application.id,
            application.amount_paid,
            metadata={
                'original_budget': gig.budget,
                'final_agreed_budget': application.final_agreed_budget,
                'was_negotiated': application.negotiation_started_at is not None
            }
        )
    if payment.status == 'completed':
        return payment
    if payment.status == 'pending':
        advance_payment(payment, 'processing', 'Payment signature verified')
    advance_payment(
        payment, 'completed', 'Escrow payment captured',
        provider_payment_id=application.payment_id,
        provider_signature=application.payment_signature,
        completed_at=datetime.utcnow()
    )
    return payment


def _replay_acceptance(gig, application):
    """Repeated verification of an accepted application: no new side effects"""
    db.session.refresh(gig)
    conversation = find_for_pair(gig.id, gig.company_id, application.freelancer_id)
    payment = Payment.query.filter_by(
        provider_order_id=application.payment_order_id, type='gig_escrow'
    ).first()

    if conversation is None or conversation.status != 'active' or payment is None or payment.status != 'completed':
        logger.info(f"Completing interrupted acceptance of application {application.id}")
        conversation, payment = _finalize_acceptance(
            gig, application,
            allow_negotiation=application.negotiation_started_at is not None
        )

    return _acceptance_result(gig, application, conversation, payment, already_processed=True)


def _acceptance_result(gig, application, conversation, payment, already_processed,
                       rejected_count=0, freelancer=None):
    result = {
        'application': application.to_dict(),
        'gig': gig.to_dict(),
        'conversation': conversation.to_dict() if conversation else None,
        'payment': payment.to_dict() if payment else None,
        'payment_recorded': payment is not None and payment.status == 'completed',
        'already_processed': already_processed,
        'rejected_applications': rejected_count
    }
    if freelancer:
        result['freelancer'] = freelancer.to_dict()
    return result


# ============================================================================
# REJECT
# ============================================================================

def reject_application(company, gig_id, freelancer_id, reason=None):
    gig = _get_gig(gig_id)
    _require_gig_owner(company, gig)
    application = _get_application(gig.id, freelancer_id)

    if application.status == 'accepted':
        raise ConflictError('Cannot reject an accepted application')
    if application.status == 'rejected':
        raise ConflictError('Application already rejected')
    if reason is not None and not isinstance(reason, str):
        raise ValidationError('Rejection reason must be text')

    was_negotiating = application.status == 'negotiating'
    now = datetime.utcnow()
    updated = Application.query.filter(
        Application.id == application.id,
        Application.status.in_(['pending', 'negotiating'])
    ).update({
        Application.status: 'rejected',
        Application.rejected_at: now,
        Application.rejection_reason: (reason or '').strip() or None
    }, synchronize_session=False)
    if updated != 1:
        db.session.rollback()
        raise ConflictError('Application was modified by another request')

    if was_negotiating:
        NegotiationEvent.query.filter_by(application_id=application.id, outcome='pending').update({
            NegotiationEvent.outcome: 'rejected',
            NegotiationEvent.responded_at: now
        }, synchronize_session=False)
        conversation = find_for_pair(gig.id, gig.company_id, freelancer_id)
        if conversation and conversation.status != 'blocked':
            conversation.status = 'archived'
            conversation.last_activity_at = now
    db.session.commit()
    db.session.refresh(application)

    notify(freelancer_id, 'application_status_changed', {
        'gig_id': gig.id,
        'gig_title': gig.title,
        'status': 'rejected',
        'related_id': gig.id
    })
    return {'application': application.to_dict()}
