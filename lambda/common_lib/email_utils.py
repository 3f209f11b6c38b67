import logging
import os
import re

import boto3
import nh3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

# Initialize SES client
ses_client = boto3.client('ses')

# Environment variables
MAIL_FROM_ADDRESS = os.environ.get('MAIL_FROM_ADDRESS')
SES_CONFIGURATION_SET = os.environ.get('SES_CONFIGURATION_SET')

# Elements dropped together with everything inside them
CLEAN_CONTENT_TAGS = {"script", "style", "iframe", "object", "embed", "noscript"}
# Tags and attributes are allowlisted; anything else (on* handlers, svg, forms) is dropped
ALLOWED_TAGS = set(nh3.ALLOWED_TAGS) - CLEAN_CONTENT_TAGS
ALLOWED_URL_SCHEMES = {"http", "https", "mailto", "tel"}


class EmailStatus:
    """Statuses recorded in the email log"""

    PENDING = "pending"
    SENT = "sent"
    LOGGED = "logged"
    FAILED = "failed"


def sanitize_html(html):
    """
    Reduce an HTML email body to allowlisted markup

    Executable elements are removed with their content; event handler
    attributes and non-http(s)/mailto/tel URLs (including entity-encoded
    javascript: URLs) never survive parsing.
    """
    if not html:
        return ''
    return nh3.clean(
        html,
        tags=ALLOWED_TAGS,
        clean_content_tags=CLEAN_CONTENT_TAGS,
        url_schemes=ALLOWED_URL_SCHEMES
    )

def sanitize_subject(subject):
    """Collapse line breaks so the subject cannot inject extra headers"""
    return re.sub(r'[\r\n]+', ' ', subject or '').strip()

def html_to_text(html_body):
    return re.sub('<[^<]+?>', '', html_body)

def is_dispatch_configured():
    return bool(MAIL_FROM_ADDRESS)

def send_email(to_email, subject, html_body, text_body=None):
    """
    Send email using AWS SES

    Args:
        to_email (str): Recipient email address
        subject (str): Email subject
        html_body (str): HTML email body, already sanitized
        text_body (str): Plain text email body (optional)

    Returns:
        str: SES MessageId

    Raises:
        ClientError, BotoCoreError: SES rejected or could not be reached
    """
    if not text_body:
        text_body = html_to_text(html_body)

    message = {
        'Subject': {'Data': subject, 'Charset': 'UTF-8'},
        'Body': {
            'Html': {'Data': html_body, 'Charset': 'UTF-8'},
            'Text': {'Data': text_body, 'Charset': 'UTF-8'}
        }
    }
    params = {
        'Source': MAIL_FROM_ADDRESS,
        'Destination': {'ToAddresses': [to_email]},
        'Message': message
    }
    if SES_CONFIGURATION_SET:
        params['ConfigurationSetName'] = SES_CONFIGURATION_SET

    try:
        response = ses_client.send_email(**params)
    except ClientError as e:
        error = e.response.get('Error', {})
        logger.error(f"Failed to send email to {to_email}. Error: {error.get('Code')} - {error.get('Message')}")
        raise
    except BotoCoreError as e:
        logger.error(f"Failed to reach SES for {to_email}: {str(e)}")
        raise

    message_id = response['MessageId']
    logger.info(f"Email sent successfully to {to_email}. MessageId: {message_id}")
    return message_id
