"""
Audit Trail Service
Records money-moving and signature events to the database, a rotating JSON
log file and, optionally, an external webhook.
"""
import json
import logging
import logging.handlers
import os
from typing import Optional, Dict, Any

import requests
from flask import has_request_context, request, session

from models import AuditLog


class AuditLogger:
    """
    Centralized audit logging with database trail and webhook forwarding
    """

    def __init__(self, app=None, db=None):
        self.app = app
        self.db = db
        self.logger = None
        self.webhook_url = None

        if app:
            self.init_app(app, db)

    def init_app(self, app, db):
        """Initialize audit logger with Flask app"""
        self.app = app
        self.db = db
        self.webhook_url = app.config.get('AUDIT_WEBHOOK_URL')
        self._setup_structured_logging()

    def _setup_structured_logging(self):
        """Configure JSON log lines with file rotation"""
        log_dir = self.app.config.get('AUDIT_LOG_DIR') or os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'logs'
        )
        os.makedirs(log_dir, exist_ok=True)

        self.logger = logging.getLogger('audit')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        json_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "event": %(message)s}'
        )

        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'audit.log'),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(json_formatter)
        self.logger.addHandler(file_handler)

        # Signature failures and rejected payouts
        critical_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'audit_critical.log'),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )
        critical_handler.setLevel(logging.WARNING)
        critical_handler.setFormatter(json_formatter)
        self.logger.addHandler(critical_handler)

        if self.app.debug:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(json_formatter)
            self.logger.addHandler(console_handler)

    def _get_request_context(self) -> Dict[str, Any]:
        context = {'ip_address': None, 'user_id': None}
        if has_request_context():
            ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
            if ip_address and ',' in ip_address:
                ip_address = ip_address.split(',')[0].strip()
            context['ip_address'] = ip_address
            context['user_id'] = session.get('user_id')
        return context

    def log_event(
        self,
        event_category: str,
        event_type: str,
        action: str,
        severity: str = 'medium',
        status: str = 'success',
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        details: Optional[Dict] = None,
        user_id: Optional[int] = None
    ):
        """
        Write an audit event to the database and the structured log

        Args:
            event_category: financial, authorization or system
            event_type: e.g. escrow_verified, signature_rejected, withdrawal_requested
            action: Human-readable description
            severity: low, medium, high, critical
            status: success, failure, blocked
            resource_type: payment, application, wallet, project
            resource_id: ID of affected resource
            details: Extra context
            user_id: Acting user when no session is available
        """
        try:
            context = self._get_request_context()
            if user_id:
                context['user_id'] = user_id

            audit_log = AuditLog(
                event_category=event_category,
                event_type=event_type,
                severity=severity,
                status=status,
                user_id=context['user_id'],
                ip_address=context['ip_address'],
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                details=json.dumps(details) if details else None
            )
            self.db.session.add(audit_log)
            self.db.session.commit()

            log_data = audit_log.to_dict()
            log_data['details'] = details
            log_level = {
                'low': logging.INFO,
                'medium': logging.INFO,
                'high': logging.WARNING,
                'critical': logging.CRITICAL
            }.get(severity, logging.INFO)
            self.logger.log(log_level, json.dumps(log_data))

            if self.webhook_url:
                self._forward(log_data)

        except Exception as e:
            self.db.session.rollback()
            self.app.logger.error(f"Audit logging failed: {e}")
            self.app.logger.error(f"Event: {event_category}/{event_type} - {action}")

    def _forward(self, payload):
        try:
            requests.post(
                self.webhook_url,
                json=payload,
                timeout=5,
                headers={'Content-Type': 'application/json'}
            )
        except requests.exceptions.RequestException as e:
            self.app.logger.warning(f"Audit webhook failed: {e}")

    def log_financial(self, event_type: str, action: str, amount, resource_type: str,
                      resource_id, status: str = 'success', **kwargs):
        """Log a money-moving event"""
        details = kwargs.pop('details', None) or {}
        details['amount'] = str(amount) if amount is not None else None
        self.log_event(
            event_category='financial',
            event_type=event_type,
            action=action,
            severity='high' if status != 'success' else 'medium',
            status=status,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            **kwargs
        )

    def log_signature_failure(self, order_id: str, payment_id: str, **kwargs):
        """Log a rejected payment signature"""
        self.log_event(
            event_category='financial',
            event_type='signature_rejected',
            action='Payment signature verification failed',
            severity='critical',
            status='blocked',
            resource_type='payment',
            resource_id=order_id,
            details={'order_id': order_id, 'payment_id': payment_id},
            **kwargs
        )


# Global instance (initialized in app.py)
audit_logger = None


def init_audit_logger(app, db):
    """Initialize global audit logger instance"""
    global audit_logger
    audit_logger = AuditLogger(app, db)
    app.extensions['audit_logger'] = audit_logger
    return audit_logger


def get_audit_logger():
    """Return the audit logger of the current app, if any"""
    from flask import current_app
    return current_app.extensions.get('audit_logger')
