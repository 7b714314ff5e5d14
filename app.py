from flask import Flask, request, jsonify, session, g
from flask_cors import CORS
from dotenv import load_dotenv
from datetime import timedelta
from functools import wraps
import os
import secrets

load_dotenv()

from models import db, User
from errors import MarketplaceError, ValidationError
from audit_logger import init_audit_logger
import application_lifecycle
import escrow_gateway
import project_delivery
import ledger

app = Flask(__name__)

# Set secret key with fallback
app.secret_key = os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY")
if not app.secret_key:
    # In production, always set SESSION_SECRET or SECRET_KEY environment variable
    app.secret_key = secrets.token_hex(32)
    print("⚠️  WARNING: Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY environment variable in production!")

app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///unjob.db')
if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgres://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgres://', 'postgresql+psycopg2://', 1)
elif app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgresql://', 'postgresql+psycopg2://', 1)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Secure session configuration
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=24)

# Audit trail destinations
app.config['AUDIT_LOG_DIR'] = os.environ.get('AUDIT_LOG_DIR')
app.config['AUDIT_WEBHOOK_URL'] = os.environ.get('AUDIT_WEBHOOK_URL')

db.init_app(app)

# Secure CORS configuration - restrict to specific origins in production
allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
CORS(app,
     origins=allowed_origins,
     supports_credentials=True,
     max_age=3600)

init_audit_logger(app, db)

MAX_PER_PAGE = 100


def role_required(*roles):
    """Decorator to require a logged-in user, optionally with one of ``roles``"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if 'user_id' not in session:
                return jsonify({'error': 'Unauthorized - Please login'}), 401

            user = db.session.get(User, session['user_id'])
            if not user:
                return jsonify({'error': 'Unauthorized - Please login'}), 401
            if roles and user.role not in roles:
                if roles == ('admin',):
                    return jsonify({'error': 'Forbidden - Admin access required'}), 403
                return jsonify({'error': f'Forbidden - {" or ".join(roles)} access required'}), 403

            g.current_user = user
            return f(*args, **kwargs)
        return decorated_function
    return decorator


# Login required decorator for API routes
login_required = role_required()
admin_required = role_required('admin')


@app.errorhandler(MarketplaceError)
def handle_marketplace_error(e):
    return jsonify(e.to_dict()), e.status_code


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _require_int(data, key):
    value = data.get(key)
    if isinstance(value, bool):
        raise ValidationError(f'{key} must be an integer')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{key} is required')


def _payment_fields(data):
    """Values the client checkout hands back after payment"""
    return (
        data.get('razorpay_order_id'),
        data.get('razorpay_payment_id'),
        data.get('razorpay_signature')
    )


def _paging(default_per_page):
    page = max(1, request.args.get('page', 1, type=int))
    per_page = request.args.get('per_page', default_per_page, type=int)
    return page, min(max(1, per_page), MAX_PER_PAGE)


# ============================================================================
# APPLICATIONS
# ============================================================================

@app.route('/api/applications/create', methods=['POST'])
@role_required('freelancer')
def create_application():
    """Freelancer applies to a gig"""
    try:
        data = _json_body()
        result = application_lifecycle.create_application(
            g.current_user,
            _require_int(data, 'gig_id'),
            iterations=data.get('iterations'),
            cover_letter=data.get('cover_letter')
        )
        return jsonify(dict(result, message='Application submitted successfully')), 201

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create application error: {str(e)}")
        return jsonify({'error': 'Failed to submit application'}), 500


@app.route('/api/applications/<int:gig_id>', methods=['GET'])
@role_required('hiring')
def get_gig_applications(gig_id):
    """Gig owner lists the applications for a gig"""
    try:
        return jsonify(application_lifecycle.list_applications(g.current_user, gig_id)), 200

    except MarketplaceError:
        raise
    except Exception as e:
        app.logger.error(f"Get applications error: {str(e)}")
        return jsonify({'error': 'Failed to retrieve applications'}), 500


@app.route('/api/applications/<int:gig_id>/accept', methods=['POST'])
@role_required('hiring')
def accept_application(gig_id):
    """Start a negotiation, create its escrow order, or verify its payment"""
    try:
        data = _json_body()
        freelancer_id = _require_int(data, 'freelancer_id')
        action = data.get('action') or 'start_negotiation'

        if action == 'start_negotiation':
            result = application_lifecycle.accept_application(
                g.current_user, gig_id, freelancer_id,
                mode='negotiate', final_budget=data.get('final_budget')
            )
            return jsonify(dict(result, message='Negotiation started')), 200

        if action == 'create_negotiation_payment':
            result = application_lifecycle.create_payment_order(
                g.current_user, gig_id, freelancer_id,
                mode='negotiate', amount=data.get('final_agreed_price')
            )
            return jsonify(dict(result, message='Payment order created')), 200

        if action == 'verify_negotiation_payment':
            order_id, payment_id, signature = _payment_fields(data)
            result = application_lifecycle.complete_payment_and_accept(
                g.current_user, gig_id, freelancer_id, order_id, payment_id, signature,
                agreed_amount=data.get('final_agreed_price'), mode='negotiate'
            )
            return jsonify(dict(result, message=_acceptance_message(result))), 200

        raise ValidationError('Invalid action')

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Accept application error: {str(e)}")
        return jsonify({'error': 'Failed to accept application'}), 500


@app.route('/api/applications/<int:gig_id>/direct-accept', methods=['POST'])
@role_required('hiring')
def direct_accept_application(gig_id):
    """Accept at the gig budget without negotiating"""
    try:
        data = _json_body()
        freelancer_id = _require_int(data, 'freelancer_id')
        action = data.get('action') or 'create_order'

        if action == 'create_order':
            result = application_lifecycle.accept_application(
                g.current_user, gig_id, freelancer_id, mode='direct'
            )
            return jsonify(dict(result, message='Payment order created')), 200

        if action == 'verify_payment':
            order_id, payment_id, signature = _payment_fields(data)
            result = application_lifecycle.complete_payment_and_accept(
                g.current_user, gig_id, freelancer_id, order_id, payment_id, signature,
                mode='direct'
            )
            return jsonify(dict(result, message=_acceptance_message(result))), 200

        raise ValidationError('Invalid action')

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Direct accept error: {str(e)}")
        return jsonify({'error': 'Failed to accept application'}), 500


def _acceptance_message(result):
    if result['already_processed']:
        return 'Payment already processed'
    if not result['payment_recorded']:
        return 'Application accepted. The payment record is incomplete; retry verification to finish it.'
    return 'Payment verified and application accepted'


@app.route('/api/applications/<int:gig_id>/negotiate', methods=['POST'])
@role_required('hiring', 'freelancer')
def propose_terms(gig_id):
    """Either side of a negotiation makes an offer"""
    try:
        data = _json_body()
        user = g.current_user
        freelancer_id = user.id if user.role == 'freelancer' else _require_int(data, 'freelancer_id')
        result = application_lifecycle.propose_terms(
            user, gig_id, freelancer_id, data.get('amount'),
            timeline=data.get('timeline'), terms=data.get('terms')
        )
        return jsonify(dict(result, message='Proposal sent')), 201

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Propose terms error: {str(e)}")
        return jsonify({'error': 'Failed to send proposal'}), 500


@app.route('/api/applications/<int:gig_id>/negotiate/respond', methods=['POST'])
@role_required('hiring', 'freelancer')
def respond_to_proposal(gig_id):
    try:
        data = _json_body()
        user = g.current_user
        freelancer_id = user.id if user.role == 'freelancer' else _require_int(data, 'freelancer_id')
        result = application_lifecycle.respond_to_proposal(
            user, gig_id, freelancer_id, data.get('decision')
        )
        return jsonify(dict(result, message=f"Proposal {result['proposal']['outcome']}")), 200

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Respond to proposal error: {str(e)}")
        return jsonify({'error': 'Failed to respond to proposal'}), 500


@app.route('/api/applications/<int:gig_id>/reject', methods=['POST'])
@role_required('hiring')
def reject_application(gig_id):
    """Gig owner rejects a freelancer's application"""
    try:
        data = _json_body()
        result = application_lifecycle.reject_application(
            g.current_user, gig_id, _require_int(data, 'freelancer_id'),
            reason=data.get('reason')
        )
        return jsonify(dict(result, message='Application rejected successfully')), 200

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Reject application error: {str(e)}")
        return jsonify({'error': 'Failed to reject application'}), 500


@app.route('/api/applications/<int:gig_id>/withdraw', methods=['DELETE'])
@role_required('freelancer')
def withdraw_application(gig_id):
    try:
        result = application_lifecycle.withdraw_application(g.current_user, gig_id)
        return jsonify(dict(result, message='Application withdrawn')), 200

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Withdraw application error: {str(e)}")
        return jsonify({'error': 'Failed to withdraw application'}), 500


# ============================================================================
# PROJECTS
# ============================================================================

@app.route('/api/projects', methods=['POST'])
@role_required('freelancer')
def submit_project():
    """Accepted freelancer submits (or resubmits) work"""
    try:
        data = _json_body()
        project = project_delivery.submit_project(
            g.current_user,
            data.get('conversation_id'),
            data.get('gig_id'),
            data.get('title'),
            data.get('description'),
            files=data.get('files')
        )
        return jsonify({
            'message': 'Project submitted successfully',
            'project': project.to_dict()
        }), 201

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Submit project error: {str(e)}")
        return jsonify({'error': 'Failed to submit project'}), 500


@app.route('/api/projects', methods=['GET'])
@login_required
def list_projects():
    """Projects for the current user, filtered by ?status="""
    try:
        page, per_page = _paging(10)
        return jsonify(project_delivery.list_projects(
            g.current_user, page, per_page, status=request.args.get('status')
        )), 200

    except MarketplaceError:
        raise
    except Exception as e:
        app.logger.error(f"List projects error: {str(e)}")
        return jsonify({'error': 'Failed to retrieve projects'}), 500


@app.route('/api/projects/<int:project_id>', methods=['GET'])
@login_required
def get_project(project_id):
    try:
        project = project_delivery.get_project(g.current_user, project_id)
        return jsonify({'project': project.to_dict()}), 200

    except MarketplaceError:
        raise
    except Exception as e:
        app.logger.error(f"Get project error: {str(e)}")
        return jsonify({'error': 'Failed to retrieve project'}), 500


# status value accepted by /status -> review decision
PROJECT_STATUS_DECISIONS = {
    'under_review': 'under_review',
    'revision_requested': 'revision',
    'approved': 'approve',
    'completed': 'approve',
    'rejected': 'reject',
}


def _review(project_id, decision, feedback, message):
    try:
        project = project_delivery.review_project(g.current_user, project_id, decision, feedback)
        return jsonify({'message': message, 'project': project.to_dict()}), 200

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Review project {project_id} ({decision}) error: {str(e)}")
        return jsonify({'error': 'Failed to update project'}), 500


@app.route('/api/projects/<int:project_id>/status', methods=['POST'])
@role_required('hiring')
def update_project_status(project_id):
    data = _json_body()
    decision = PROJECT_STATUS_DECISIONS.get(data.get('status'))
    if not decision:
        raise ValidationError(f'Status must be one of: {", ".join(PROJECT_STATUS_DECISIONS)}')
    return _review(project_id, decision, data.get('feedback'), 'Project status updated')


@app.route('/api/projects/<int:project_id>/approve', methods=['POST'])
@role_required('hiring')
def approve_project(project_id):
    data = _json_body()
    return _review(project_id, 'approve', data.get('feedback'),
                   'Project approved and payment released')


@app.route('/api/projects/<int:project_id>/request-revision', methods=['POST'])
@role_required('hiring')
def request_project_revision(project_id):
    data = _json_body()
    feedback = data.get('feedback') or data.get('revision_notes')
    return _review(project_id, 'revision', feedback, 'Revision requested')


# ============================================================================
# FREELANCER WALLET
# ============================================================================

@app.route('/api/freelancer/wallet', methods=['GET'])
@role_required('freelancer')
def get_wallet():
    try:
        return jsonify({'wallet': ledger.wallet_summary(g.current_user)}), 200

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Get wallet error: {str(e)}")
        return jsonify({'error': 'Failed to load wallet'}), 500


@app.route('/api/freelancer/wallet/transactions', methods=['GET'])
@role_required('freelancer')
def get_wallet_transactions():
    try:
        page, per_page = _paging(20)
        return jsonify(ledger.list_transactions(
            g.current_user, page, per_page, transaction_type=request.args.get('type')
        )), 200

    except MarketplaceError:
        raise
    except Exception as e:
        app.logger.error(f"Get wallet transactions error: {str(e)}")
        return jsonify({'error': 'Failed to load transactions'}), 500


@app.route('/api/freelancer/wallet/withdrawals', methods=['GET'])
@role_required('freelancer')
def get_withdrawal_history():
    try:
        page, per_page = _paging(10)
        return jsonify(ledger.withdrawal_history(
            g.current_user, page, per_page, status=request.args.get('status')
        )), 200

    except MarketplaceError:
        raise
    except Exception as e:
        app.logger.error(f"Get withdrawal history error: {str(e)}")
        return jsonify({'error': 'Failed to load withdrawal history'}), 500


@app.route('/api/freelancer/bank-details', methods=['GET'])
@role_required('freelancer')
def get_bank_details():
    return jsonify({'bank_details': ledger.get_bank_details(g.current_user)}), 200


@app.route('/api/freelancer/bank-details', methods=['POST'])
@role_required('freelancer')
def update_bank_details():
    """Save payout details used by future withdrawal requests"""
    try:
        data = _json_body()
        bank_details = ledger.update_bank_details(g.current_user, data)
        return jsonify({
            'message': 'Bank details updated successfully',
            'bank_details': bank_details
        }), 200

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update bank details error: {str(e)}")
        return jsonify({'error': 'Failed to update bank details'}), 500


@app.route('/api/freelancer/wallet/withdraw', methods=['POST'])
@role_required('freelancer')
def request_withdrawal():
    """Freelancer requests a payout of wallet balance"""
    try:
        data = _json_body()
        bank_details = data.get('bank_details')
        if bank_details is None:
            bank_details = {k: data.get(k) for k in (
                'account_holder_name', 'account_number', 'ifsc_code', 'bank_name', 'upi_id'
            )}
        withdrawal, wallet = ledger.request_withdrawal(g.current_user, data.get('amount'), bank_details)

        return jsonify({
            'message': 'Withdrawal request submitted successfully',
            'withdrawal': {
                'id': withdrawal.id,
                'withdrawal_id': withdrawal.reference_number,
                'amount': float(withdrawal.amount),
                'status': withdrawal.status,
                'requested_at': withdrawal.created_at.isoformat(),
                'estimated_processing_time': ledger.ESTIMATED_PROCESSING_TIME
            },
            'wallet': wallet.to_dict()
        }), 201

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Withdrawal request error: {str(e)}")
        return jsonify({'error': 'Failed to process withdrawal request'}), 500


# ============================================================================
# PAYMENT HISTORY
# ============================================================================

@app.route('/api/payments/history', methods=['GET'])
@login_required
def get_payment_history():
    """Escrow payments and withdrawals the current user paid or received"""
    try:
        page, per_page = _paging(10)
        return jsonify(escrow_gateway.payment_history(
            g.current_user, page, per_page,
            payment_type=request.args.get('type'),
            status=request.args.get('status')
        )), 200

    except MarketplaceError:
        raise
    except Exception as e:
        app.logger.error(f"Payment history error: {str(e)}")
        return jsonify({'error': 'Failed to load payment history'}), 500


# ============================================================================
# ADMIN PAYOUTS
# ============================================================================

@app.route('/api/payments/withdraw/<int:withdrawal_id>/process', methods=['POST'])
@admin_required
def process_withdrawal(withdrawal_id):
    """Admin approves or rejects a withdrawal request"""
    try:
        data = _json_body()
        withdrawal, changed = ledger.resolve_withdrawal(
            g.current_user, withdrawal_id, data.get('action'),
            note=data.get('admin_notes') or data.get('note')
        )
        message = f'Withdrawal {withdrawal.status}' if changed else f'Withdrawal already {withdrawal.status}'
        return jsonify({
            'message': message,
            'changed': changed,
            'withdrawal': withdrawal.to_dict()
        }), 200

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Process withdrawal {withdrawal_id} error: {str(e)}")
        return jsonify({'error': 'Failed to process withdrawal'}), 500


@app.route('/api/payments/withdraw/<int:withdrawal_id>/complete', methods=['POST'])
@admin_required
def complete_withdrawal(withdrawal_id):
    try:
        data = _json_body()
        withdrawal, changed = ledger.complete_withdrawal(
            g.current_user, withdrawal_id, transfer_reference=data.get('transfer_reference')
        )
        return jsonify({
            'message': 'Withdrawal completed' if changed else 'Withdrawal already completed',
            'changed': changed,
            'withdrawal': withdrawal.to_dict()
        }), 200

    except MarketplaceError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Complete withdrawal {withdrawal_id} error: {str(e)}")
        return jsonify({'error': 'Failed to complete withdrawal'}), 500


with app.app_context():
    db.create_all()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True')
