"""SendGrid email delivery for lifecycle notifications"""
import os

from flask import current_app, render_template
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, To


class EmailService:
    """Service for sending notification emails via SendGrid"""

    def __init__(self):
        self.api_key = os.environ.get('SENDGRID_API_KEY')
        self.from_email = os.environ.get('SENDGRID_FROM_EMAIL')

    def is_configured(self):
        """Check if SendGrid is properly configured"""
        return bool(self.api_key and self.from_email)

    @staticmethod
    def render_html(title, message, link=None):
        """Render the branded notification email. Needs an app context."""
        return render_template(
            'email_notification.html',
            title=title,
            message=message or '',
            link=link,
            base_url=os.environ.get('APP_BASE_URL', '').rstrip('/')
        )

    def send_email(self, to_email, to_name, subject, html_content, text_content=None):
        """
        Send one email to one recipient

        Returns:
            tuple: (success: bool, message: str, response_status: int or None)
        """
        if not self.is_configured():
            return False, "SendGrid is not configured. Please add SENDGRID_API_KEY and SENDGRID_FROM_EMAIL.", None

        if not to_email:
            return False, "No recipient specified.", None

        message = Mail(
            from_email=self.from_email,
            to_emails=To(email=to_email, name=to_name) if to_name else to_email,
            subject=subject,
            plain_text_content=text_content,
            html_content=html_content
        )

        try:
            response = SendGridAPIClient(self.api_key).send(message)
        except Exception as e:
            current_app.logger.error(f"Error sending email to {to_email}: {str(e)}")
            return False, str(e), None

        if 200 <= response.status_code < 300:
            return True, "Email sent.", response.status_code

        current_app.logger.warning(f"Non-success status {response.status_code} for {to_email}")
        return False, f"SendGrid returned {response.status_code}", response.status_code


# Global instance
email_service = EmailService()
