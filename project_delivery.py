"""
Project delivery for accepted applications.

    submitted -> under_review -> approved -> completed
    submitted | under_review -> revision_requested -> submitted (same project)
    submitted | under_review | revision_requested -> rejected

``iterations_current`` on the project mirrors ``used_iterations`` on the
application: the first submission uses one iteration and every revision
request uses one more, so the project's remaining count always equals the
application's ``remaining_iterations``.
"""

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from audit_logger import get_audit_logger
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ledger import credit
from models import db, Application, Conversation, Gig, Project, RevisionNote
from notification_service import notify

logger = logging.getLogger(__name__)

TERMINAL_PROJECT_STATUSES = ('completed', 'rejected')
REVIEW_DECISIONS = ('under_review', 'approve', 'revision', 'reject')
MIN_REVISION_FEEDBACK_LENGTH = 10
MAX_FILES_PER_SUBMISSION = 20


def _clean_files(files):
    if files is None:
        return []
    if not isinstance(files, list):
        raise ValidationError('Files must be a list')
    if len(files) > MAX_FILES_PER_SUBMISSION:
        raise ValidationError(f'At most {MAX_FILES_PER_SUBMISSION} files can be submitted')

    cleaned = []
    for f in files:
        if not isinstance(f, dict) or not f.get('name') or not f.get('url'):
            raise ValidationError('Each file needs a name and a url')
        cleaned.append({
            'name': str(f['name'])[:255],
            'url': str(f['url']),
            'type': f.get('type'),
            'size': f.get('size')
        })
    return cleaned


def _require_text(value, label, max_length=None):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{label} is required')
    value = value.strip()
    if max_length:
        value = value[:max_length]
    return value


# ============================================================================
# SUBMISSION
# ============================================================================

def submit_project(freelancer, conversation_id, gig_id, title, description, files=None):
    """
    Submit work for an accepted application.

    The first call creates the Project; after a revision request the same
    Project is resubmitted.
    """
    if freelancer.role != 'freelancer':
        raise ForbiddenError('Only freelancers can submit projects')

    conversation = db.session.get(Conversation, conversation_id) if conversation_id else None
    if not conversation or not conversation.has_participant(freelancer.id):
        raise NotFoundError('Conversation not found')

    gig = db.session.get(Gig, gig_id) if gig_id else None
    if not gig or conversation.gig_id != gig.id:
        raise NotFoundError('Gig not found')

    if conversation.status != 'active':
        raise ForbiddenError('Conversation is not active')
    if conversation.freelancer_id != freelancer.id or gig.selected_freelancer_id != freelancer.id:
        raise ForbiddenError('Only the accepted freelancer can submit work for this gig')

    application = Application.query.filter_by(
        gig_id=gig.id, freelancer_id=freelancer.id, status='accepted'
    ).first()
    if not application:
        raise ForbiddenError('Only the accepted freelancer can submit work for this gig')

    title = _require_text(title, 'Title', 200)
    description = _require_text(description, 'Description')
    files = _clean_files(files)

    now = datetime.utcnow()
    project = Project.query.filter_by(application_id=application.id).first()

    if project is None:
        project = _create_project(gig, application, conversation, title, description, files, now)
    elif project.status == 'revision_requested':
        updated = Project.query.filter(
            Project.id == project.id,
            Project.status == 'revision_requested'
        ).update({
            Project.status: 'submitted',
            Project.title: title,
            Project.description: description,
            Project.files: files,
            Project.submission_count: Project.submission_count + 1,
            Project.submitted_at: now
        }, synchronize_session=False)
        if updated != 1:
            db.session.rollback()
            raise ConflictError('Project was modified by another request')
    elif project.status in ('submitted', 'under_review'):
        raise ConflictError('A submission is already awaiting review')
    else:
        raise ConflictError(f'Project is already {project.status}')

    db.session.commit()
    db.session.refresh(project)

    logger.info(f"Project {project.id} submitted for gig {gig.id} (iteration {project.iterations_current})")
    notify(project.company_id, 'project_submitted', {
        'freelancer_name': freelancer.display_name,
        'project_title': project.title,
        'iteration': project.iterations_current,
        'project_id': project.id,
        'related_id': project.id
    })
    return project


def _create_project(gig, application, conversation, title, description, files, now):
    used = Application.query.filter(
        Application.id == application.id,
        Application.used_iterations == 0
    ).update({
        Application.used_iterations: 1,
        Application.remaining_iterations: Application.total_iterations - 1
    }, synchronize_session=False)
    if used != 1:
        db.session.rollback()
        raise ConflictError('Project was already submitted for this application')

    payment_amount = (gig.freelancer_receivable_amount
                      or application.final_agreed_budget
                      or gig.budget)
    project = Project(
        gig_id=gig.id,
        application_id=application.id,
        freelancer_id=application.freelancer_id,
        company_id=gig.company_id,
        conversation_id=conversation.id,
        title=title,
        description=description,
        files=files,
        status='submitted',
        iterations_current=1,
        iterations_maximum=application.total_iterations,
        payment_amount=payment_amount,
        payment_status='escrowed' if application.payment_id else 'pending',
        submission_count=1,
        submitted_at=now
    )
    try:
        with db.session.begin_nested():
            db.session.add(project)
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('Project was already submitted for this application')
    return project


# ============================================================================
# REVIEW
# ============================================================================

def _get_project(project_id):
    project = db.session.get(Project, project_id)
    if not project:
        raise NotFoundError('Project not found')
    return project


def get_project(user, project_id):
    project = _get_project(project_id)
    if user.id not in (project.freelancer_id, project.company_id) and not user.is_admin:
        raise ForbiddenError('You do not have access to this project')
    return project


PROJECT_STATUSES = ('submitted', 'under_review', 'revision_requested', 'approved', 'rejected', 'completed')


def list_projects(user, page=1, per_page=10, status=None):
    """Projects the user delivers (freelancer) or reviews (hiring), newest first"""
    if user.role == 'freelancer':
        query = Project.query.filter_by(freelancer_id=user.id)
    elif user.role == 'hiring':
        query = Project.query.filter_by(company_id=user.id)
    else:
        query = Project.query
    if status:
        if status not in PROJECT_STATUSES:
            raise ValidationError(f'Status must be one of: {", ".join(PROJECT_STATUSES)}')
        query = query.filter_by(status=status)

    pagination = query.order_by(Project.created_at.desc(), Project.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )
    return {
        'projects': [p.to_dict() for p in pagination.items],
        'total': pagination.total,
        'pages': pagination.pages,
        'current_page': page,
        'has_next': pagination.has_next,
        'has_prev': pagination.has_prev
    }


def review_project(company, project_id, decision, feedback=None):
    """
    Company decision on the current submission.

    Args:
        decision: under_review, approve, revision or reject
        feedback: Required (10+ characters) for revision
    """
    if decision not in REVIEW_DECISIONS:
        raise ValidationError(f'Decision must be one of: {", ".join(REVIEW_DECISIONS)}')
    if feedback is not None and not isinstance(feedback, str):
        raise ValidationError('Feedback must be text')

    project = _get_project(project_id)
    if company.role != 'hiring' or project.company_id != company.id:
        raise ForbiddenError('Only the company can review this project')
    if project.status in TERMINAL_PROJECT_STATUSES:
        raise ConflictError(f'Project is already {project.status}')

    feedback = (feedback or '').strip() or None
    handler = {
        'under_review': _mark_under_review,
        'approve': _approve,
        'revision': _request_revision,
        'reject': _reject,
    }[decision]
    return handler(company, project, feedback)


def _mark_under_review(company, project, feedback):
    if project.status == 'under_review':
        return project
    updated = Project.query.filter(
        Project.id == project.id,
        Project.status == 'submitted'
    ).update({
        Project.status: 'under_review',
        Project.reviewed_at: datetime.utcnow()
    }, synchronize_session=False)
    if updated != 1:
        db.session.rollback()
        raise ConflictError(f'Only submitted projects can be put under review (status: {project.status})')
    db.session.commit()
    db.session.refresh(project)

    notify(project.freelancer_id, 'project_reviewed', {
        'project_title': project.title,
        'status': 'under review',
        'project_id': project.id,
        'related_id': project.id
    })
    return project


def _request_revision(company, project, feedback):
    if not feedback or len(feedback) < MIN_REVISION_FEEDBACK_LENGTH:
        raise ValidationError(
            f'Revision feedback must be at least {MIN_REVISION_FEEDBACK_LENGTH} characters'
        )
    if project.status == 'revision_requested':
        raise ConflictError('A revision has already been requested')
    if project.iterations_remaining <= 0:
        raise ConflictError('No revisions remaining')

    now = datetime.utcnow()
    updated = Project.query.filter(
        Project.id == project.id,
        Project.status.in_(['submitted', 'under_review']),
        Project.iterations_current < Project.iterations_maximum
    ).update({
        Project.status: 'revision_requested',
        Project.iterations_current: Project.iterations_current + 1,
        Project.company_feedback: feedback,
        Project.reviewed_at: now
    }, synchronize_session=False)
    if updated != 1:
        db.session.rollback()
        db.session.refresh(project)
        if project.iterations_remaining <= 0:
            raise ConflictError('No revisions remaining')
        raise ConflictError('Project was modified by another request')

    used = Application.query.filter(
        Application.id == project.application_id,
        Application.used_iterations < Application.total_iterations
    ).update({
        Application.used_iterations: Application.used_iterations + 1,
        Application.remaining_iterations: Application.total_iterations - Application.used_iterations - 1
    }, synchronize_session=False)
    if used != 1:
        db.session.rollback()
        raise ConflictError('No revisions remaining')

    db.session.refresh(project)
    db.session.add(RevisionNote(
        project_id=project.id,
        note=feedback,
        iteration=project.iterations_current,
        added_by=company.id,
        added_at=now
    ))
    db.session.commit()
    db.session.refresh(project)

    logger.info(f"Revision requested on project {project.id}, {project.iterations_remaining} left")
    notify(project.freelancer_id, 'project_reviewed', {
        'project_title': project.title,
        'status': 'revision requested',
        'project_id': project.id,
        'related_id': project.id
    })
    return project


def _approve(company, project, feedback):
    now = datetime.utcnow()
    values = {
        Project.status: 'approved',
        Project.approved_at: now,
        Project.reviewed_at: now
    }
    if feedback:
        values[Project.company_feedback] = feedback
    updated = Project.query.filter(
        Project.id == project.id,
        Project.status.in_(['submitted', 'under_review', 'revision_requested'])
    ).update(values, synchronize_session=False)
    if updated != 1:
        db.session.rollback()
        raise ConflictError('Project was modified by another request')

    Project.query.filter(
        Project.id == project.id,
        Project.status == 'approved'
    ).update({
        Project.status: 'completed',
        Project.completed_at: now,
        Project.payment_status: 'released'
    }, synchronize_session=False)

    Application.query.filter(
        Application.id == project.application_id,
        Application.completed_at.is_(None)
    ).update({Application.completed_at: now}, synchronize_session=False)
    Gig.query.filter_by(id=project.gig_id).update({Gig.status: 'completed'}, synchronize_session=False)

    db.session.refresh(project)
    amount = project.payment_amount
    if amount and amount > 0:
        credit(project.freelancer_id, amount, f'project:{project.id}',
               description=f'Payment for project "{project.title}"', commit=False)
    db.session.commit()
    db.session.refresh(project)

    logger.info(f"Project {project.id} completed, {amount} released to user {project.freelancer_id}")
    audit = get_audit_logger()
    if audit:
        audit.log_financial('project_payment_released', f'Project {project.id} approved and paid out',
                            amount, 'project', project.id, user_id=company.id)

    notify(project.freelancer_id, 'project_completed', {
        'project_title': project.title,
        'amount': amount,
        'project_id': project.id,
        'related_id': project.id
    })
    return project


def _reject(company, project, feedback):
    values = {
        Project.status: 'rejected',
        Project.reviewed_at: datetime.utcnow()
    }
    if feedback:
        values[Project.company_feedback] = feedback
    updated = Project.query.filter(
        Project.id == project.id,
        Project.status.in_(['submitted', 'under_review', 'revision_requested'])
    ).update(values, synchronize_session=False)
    if updated != 1:
        db.session.rollback()
        raise ConflictError('Project was modified by another request')
    db.session.commit()
    db.session.refresh(project)

    notify(project.freelancer_id, 'project_reviewed', {
        'project_title': project.title,
        'status': 'rejected',
        'project_id': project.id,
        'related_id': project.id
    })
    return project
