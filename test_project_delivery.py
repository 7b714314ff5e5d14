"""Project submission, review, revision limits and payout on approval"""
import pytest

import application_lifecycle
import project_delivery
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import db, Application, Gig, Notification, Project, RevisionNote, Wallet, WalletTransaction

FILES = [{'name': 'logo.png', 'url': 'https://files.example.com/logo.png', 'type': 'image/png', 'size': 2048}]


@pytest.fixture
def accepted(company, make_freelancer, make_gig, accept_direct):
    """An accepted application with two iterations"""
    freelancer = make_freelancer()
    gig = make_gig(company, budget=5000)
    application_lifecycle.create_application(freelancer, gig.id, iterations=2)
    result = accept_direct(company, freelancer, gig)
    return gig, freelancer, result['conversation']['id']


def submit(accepted, title='Logo v1'):
    gig, freelancer, conversation_id = accepted
    return project_delivery.submit_project(freelancer, conversation_id, gig.id, title,
                                           'First round of concepts', FILES)


def assert_iterations_mirror(project):
    application = db.session.get(Application, project.application_id)
    db.session.refresh(application)
    db.session.refresh(project)
    assert application.remaining_iterations == application.total_iterations - application.used_iterations
    assert application.remaining_iterations >= 0
    assert project.iterations_remaining == application.remaining_iterations
    return application


def test_first_submission_uses_one_iteration(company, accepted):
    project = submit(accepted)

    assert project.status == 'submitted'
    assert project.iterations_current == 1
    assert project.iterations_maximum == 2
    assert project.payment_amount == 5000
    assert project.payment_status == 'escrowed'
    assert project.files[0]['name'] == 'logo.png'
    application = assert_iterations_mirror(project)
    assert application.used_iterations == 1
    assert Notification.query.filter_by(user_id=company.id, notification_type='project_submitted').count() == 1


def test_cannot_submit_while_awaiting_review(accepted):
    submit(accepted)
    with pytest.raises(ConflictError):
        submit(accepted, title='Logo v1 again')


def test_submission_needs_a_participant_conversation(accepted, make_freelancer):
    gig, _, conversation_id = accepted
    outsider = make_freelancer()

    with pytest.raises(NotFoundError):
        project_delivery.submit_project(outsider, conversation_id, gig.id, 'T', 'D', [])
    with pytest.raises(NotFoundError):
        project_delivery.submit_project(outsider, 999, gig.id, 'T', 'D', [])


def test_submission_for_another_gig_is_not_found(company, accepted, make_gig):
    _, freelancer, conversation_id = accepted
    other_gig = make_gig(company)
    with pytest.raises(NotFoundError):
        project_delivery.submit_project(freelancer, conversation_id, other_gig.id, 'T', 'D', [])


def test_submission_needs_active_conversation(accepted):
    from models import Conversation
    gig, freelancer, conversation_id = accepted
    Conversation.query.filter_by(id=conversation_id).update({'status': 'archived'})
    db.session.commit()

    with pytest.raises(ForbiddenError):
        project_delivery.submit_project(freelancer, conversation_id, gig.id, 'T', 'D', [])


@pytest.mark.parametrize('files', [[{'name': 'a.png'}], 'a.png', [{'url': 'https://x'}]])
def test_files_need_name_and_url(accepted, files):
    gig, freelancer, conversation_id = accepted
    with pytest.raises(ValidationError):
        project_delivery.submit_project(freelancer, conversation_id, gig.id, 'T', 'D', files)


def test_revision_loops_back_to_submission(company, accepted):
    project = submit(accepted)

    with pytest.raises(ValidationError):
        project_delivery.review_project(company, project.id, 'revision', 'too short')

    project = project_delivery.review_project(company, project.id, 'revision', 'Please use a darker palette')

    assert project.status == 'revision_requested'
    assert project.iterations_current == 2
    assert project.iterations_remaining == 0
    assert project.company_feedback == 'Please use a darker palette'
    application = assert_iterations_mirror(project)
    assert application.used_iterations == 2
    note = RevisionNote.query.filter_by(project_id=project.id).one()
    assert note.iteration == 2

    resubmitted = submit(accepted, title='Logo v2')
    assert resubmitted.id == project.id
    assert resubmitted.status == 'submitted'
    assert resubmitted.submission_count == 2
    assert resubmitted.title == 'Logo v2'


def test_revision_with_none_remaining_is_conflict(company, accepted):
    project = submit(accepted)
    project_delivery.review_project(company, project.id, 'revision', 'Please use a darker palette')
    submit(accepted, title='Logo v2')

    with pytest.raises(ConflictError, match='No revisions remaining'):
        project_delivery.review_project(company, project.id, 'revision', 'One more round please')
    db.session.rollback()

    project = db.session.get(Project, project.id)
    assert project.status == 'submitted'
    assert project.iterations_current == 2
    assert_iterations_mirror(project)


def test_revision_twice_in_a_row_is_conflict(company, make_freelancer, make_gig, accept_direct):
    freelancer = make_freelancer()
    gig = make_gig(company)
    application_lifecycle.create_application(freelancer, gig.id, iterations=5)
    conversation_id = accept_direct(company, freelancer, gig)['conversation']['id']
    project = project_delivery.submit_project(freelancer, conversation_id, gig.id, 'T', 'D', FILES)

    project_delivery.review_project(company, project.id, 'revision', 'Please use a darker palette')
    with pytest.raises(ConflictError):
        project_delivery.review_project(company, project.id, 'revision', 'Please use a darker palette')


def test_approval_completes_and_credits_wallet_once(company, accepted):
    gig, freelancer, _ = accepted
    project = submit(accepted)

    project = project_delivery.review_project(company, project.id, 'approve', 'Great work')

    assert project.status == 'completed'
    assert project.payment_status == 'released'
    assert project.approved_at is not None and project.completed_at is not None
    assert db.session.get(Gig, gig.id).status == 'completed'
    application = db.session.get(Application, project.application_id)
    assert application.completed_at is not None
    assert application.status == 'accepted'

    wallet = Wallet.query.filter_by(user_id=freelancer.id).one()
    assert wallet.balance == 5000
    assert wallet.total_earned == 5000
    assert WalletTransaction.query.filter_by(reference=f'project:{project.id}').count() == 1
    assert Notification.query.filter_by(user_id=freelancer.id, notification_type='project_completed').count() == 1

    with pytest.raises(ConflictError):
        project_delivery.review_project(company, project.id, 'approve')
    db.session.rollback()
    assert Wallet.query.filter_by(user_id=freelancer.id).one().balance == 5000


def test_rejection_is_terminal_without_payout(company, accepted):
    _, freelancer, _ = accepted
    project = submit(accepted)

    project = project_delivery.review_project(company, project.id, 'reject', 'Not what we asked for')

    assert project.status == 'rejected'
    assert project.iterations_current == 1
    assert Wallet.query.filter_by(user_id=freelancer.id).first() is None
    with pytest.raises(ConflictError):
        project_delivery.review_project(company, project.id, 'approve')
    with pytest.raises(ConflictError):
        submit(accepted, title='Logo v2')


def test_under_review(company, accepted):
    project = submit(accepted)
    project = project_delivery.review_project(company, project.id, 'under_review')
    assert project.status == 'under_review'

    project = project_delivery.review_project(company, project.id, 'revision', 'Please use a darker palette')
    assert project.status == 'revision_requested'


def test_only_owning_company_reviews(accepted, make_user):
    project = submit(accepted)
    with pytest.raises(ForbiddenError):
        project_delivery.review_project(make_user('hiring'), project.id, 'approve')
    with pytest.raises(ForbiddenError):
        project_delivery.review_project(accepted[1], project.id, 'approve')


def test_unknown_decision_and_project(company):
    with pytest.raises(ValidationError):
        project_delivery.review_project(company, 1, 'ship_it')
    with pytest.raises(NotFoundError):
        project_delivery.review_project(company, 999, 'approve')


def test_project_visible_to_participants_only(company, accepted, make_user):
    project = submit(accepted)
    assert project_delivery.get_project(company, project.id).id == project.id
    assert project_delivery.get_project(accepted[1], project.id).id == project.id
    with pytest.raises(ForbiddenError):
        project_delivery.get_project(make_user('freelancer'), project.id)


def test_list_projects_by_role(company, accepted, make_user, admin):
    project = submit(accepted)
    freelancer = accepted[1]

    for user in (company, freelancer, admin):
        listed = project_delivery.list_projects(user)
        assert listed['total'] == 1
        assert listed['projects'][0]['id'] == project.id

    assert project_delivery.list_projects(make_user('hiring'))['total'] == 0
    assert project_delivery.list_projects(make_user('freelancer'))['projects'] == []


def test_list_projects_filters_by_status(company, accepted):
    project = submit(accepted)

    assert project_delivery.list_projects(company, status='submitted')['total'] == 1
    assert project_delivery.list_projects(company, status='completed')['total'] == 0
    project_delivery.review_project(company, project.id, 'approve')
    completed = project_delivery.list_projects(accepted[1], status='completed')
    assert [p['status'] for p in completed['projects']] == ['completed']
    with pytest.raises(ValidationError):
        project_delivery.list_projects(company, status='shipped')


def test_list_projects_pages(company, accepted):
    submit(accepted)

    second_page = project_delivery.list_projects(company, page=2, per_page=1)

    assert second_page['projects'] == []
    assert second_page['current_page'] == 2
    assert second_page['has_prev'] is True
