"""
Email Management Module
Handles outbound email dispatch and the email log
"""

import logging

from botocore.exceptions import BotoCoreError, ClientError

import db_utils as db
import email_utils
from email_utils import EmailStatus
from exceptions import EffectFailedError
from telemetry_utils import get_telemetry_sink

logger = logging.getLogger(__name__)


class EmailManager:
    """Manages email-related business logic"""

    @staticmethod
    def send_email(identity, email_data):
        """
        Sanitize, dispatch and log one email

        Without a configured sender address the message is only recorded in
        the email log (status "logged"). With one, the log entry is written
        as "pending" before SES is called and settled to "sent" or "failed"
        together with the audit entry, so a message never leaves without a
        log entry. Exactly one email log entry and one audit entry exist per
        call.

        Args:
            identity (Identity): Resolved caller
            email_data (dict): Validated send-email payload

        Returns:
            dict: Email log id and status

        Raises:
            EffectFailedError: SES or storage failure
        """
        recipient = email_data['to']
        subject = email_utils.sanitize_subject(email_data['subject'])
        html_body = email_utils.sanitize_html(email_data['html'])
        email_logs_table = db.require_table(db.EMAIL_LOGS_TABLE, 'EMAIL_LOGS_TABLE')
        audit_table = db.require_table(db.AUDIT_LOG_TABLE, 'AUDIT_LOG_TABLE')

        if not email_utils.is_dispatch_configured():
            logger.info(f"Email dispatch not configured, logging only: {recipient} - {subject}")
            log_entry = db.build_email_log_entry(identity.user_id, recipient, subject, EmailStatus.LOGGED)
            db.execute_transaction([
                db.insert_op(email_logs_table, log_entry),
                db.insert_op(audit_table, EmailManager._audit_entry(identity, log_entry['id'], recipient,
                                                                    EmailStatus.LOGGED))
            ], 'log email')
            get_telemetry_sink().track_event('email_logged')
            return {'email_log_id': log_entry['id'], 'status': EmailStatus.LOGGED, 'message_id': None}

        log_entry = db.build_email_log_entry(identity.user_id, recipient, subject, EmailStatus.PENDING)
        db.execute_transaction([db.insert_op(email_logs_table, log_entry)], 'log email')

        message_id = None
        error = None
        try:
            message_id = email_utils.send_email(recipient, subject, html_body)
            status = EmailStatus.SENT
        except (ClientError, BotoCoreError) as e:
            status = EmailStatus.FAILED
            error = str(e)[:500]

        db.execute_transaction([
            db.update_op(
                email_logs_table,
                {'id': log_entry['id']},
                EmailManager._settled_fields(status, message_id, error),
                condition='attribute_exists(id) AND #status = :pending',
                names={'#status': 'status'},
                values={':pending': EmailStatus.PENDING}
            ),
            db.insert_op(audit_table, EmailManager._audit_entry(identity, log_entry['id'], recipient, status))
        ], 'record email status')

        get_telemetry_sink().track_event(f'email_{status}')
        if status == EmailStatus.FAILED:
            raise EffectFailedError("Failed to send email", cause=error)

        return {
            'email_log_id': log_entry['id'],
            'status': status,
            'message_id': message_id
        }

    @staticmethod
    def _settled_fields(status, message_id, error):
        fields = {'status': status, 'updated_at': db.now_iso()}
        if message_id:
            fields['message_id'] = message_id
        if error:
            fields['error'] = error
        return fields

    @staticmethod
    def _audit_entry(identity, email_log_id, recipient, status):
        return db.build_audit_entry(identity.user_id, 'email_sent', {
            'email_log_id': email_log_id,
            'to_email': recipient,
            'status': status
        })
