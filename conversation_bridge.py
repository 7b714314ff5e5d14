"""
Conversation threads bound to a (gig, company, freelancer) triple.

There is exactly one conversation per triple. Negotiation and delivery reuse
it and only move its status and negotiation metadata.
"""

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from errors import ConflictError, ValidationError
from models import db, Conversation

logger = logging.getLogger(__name__)

CONVERSATION_STATUSES = ('negotiating', 'active', 'archived', 'blocked')
NEGOTIATION_PHASES = ('initial', 'active', 'finalizing', 'completed')
METADATA_FIELDS = ('negotiation_phase', 'original_budget', 'final_agreed_price',
                   'payment_completed', 'allow_negotiation')


def find_for_pair(gig_id, company_id, freelancer_id):
    return Conversation.query.filter_by(
        gig_id=gig_id, company_id=company_id, freelancer_id=freelancer_id
    ).first()


def open_or_activate(gig_id, company_id, freelancer_id, status, **metadata):
    """
    Create the conversation for this triple, or update the existing one.

    Args:
        gig_id, company_id, freelancer_id: The conversation key
        status: negotiating or active (archived/blocked are set elsewhere)
        **metadata: Any of METADATA_FIELDS

    Does not commit; the caller owns the transaction.
    """
    if status not in CONVERSATION_STATUSES:
        raise ValidationError(f'Invalid conversation status: {status}')
    unknown = set(metadata) - set(METADATA_FIELDS)
    if unknown:
        raise ValidationError(f'Unknown conversation fields: {", ".join(sorted(unknown))}')
    phase = metadata.get('negotiation_phase')
    if phase is not None and phase not in NEGOTIATION_PHASES:
        raise ValidationError(f'Invalid negotiation phase: {phase}')

    conversation = find_for_pair(gig_id, company_id, freelancer_id)
    if conversation is None:
        try:
            with db.session.begin_nested():
                conversation = Conversation(
                    gig_id=gig_id,
                    company_id=company_id,
                    freelancer_id=freelancer_id,
                    status=status,
                    **metadata
                )
                db.session.add(conversation)
            logger.info(f"Opened conversation {conversation.id} for gig {gig_id} / freelancer {freelancer_id}")
            return conversation
        except IntegrityError:
            # Another request created it first
            conversation = find_for_pair(gig_id, company_id, freelancer_id)

    if conversation.status == 'blocked':
        raise ConflictError('Conversation is blocked')

    conversation.status = status
    for field, value in metadata.items():
        setattr(conversation, field, value)
    conversation.last_activity_at = datetime.utcnow()
    db.session.flush()
    return conversation
