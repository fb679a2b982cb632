import logging
from smtplib import SMTPException

from bs4 import BeautifulSoup
from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

from .exceptions import EmailDeliveryError

logger = logging.getLogger(__name__)

TEMPLATE_DIR = 'workflow/emails'

SUBJECTS = {
    'verification': 'Verify Your Account',
    'password_reset': 'Password Reset Request',
    'welcome': 'Welcome to the Radiology Platform',
    'study_assignment': 'New Study Assignment',
    'stat_order': 'URGENT: STAT Order Received',
    'sla_warning': 'SLA Warning: Study Due Soon',
    'report_finalized': 'Report Finalized',
    'dispute_notification': 'Report Dispute Notification',
}


def render_email(template, context):
    html = render_to_string(f"{TEMPLATE_DIR}/{template}.html", context)
    text = BeautifulSoup(html, 'html.parser').get_text('\n', strip=True)
    return html, text


def send_email(to, template, context=None, subject=None, attachments=None):
    """Render ``template`` and deliver it; raises EmailDeliveryError on SMTP failure."""
    recipients = [to] if isinstance(to, str) else list(to)
    subject = subject or SUBJECTS.get(template, 'Radiology Platform')
    context = {
        'subject': subject,
        'frontend_url': settings.FRONTEND_URL,
        **(context or {}),
    }
    html, text = render_email(template, context)
    message = EmailMultiAlternatives(subject, text, settings.DEFAULT_FROM_EMAIL, recipients)
    message.attach_alternative(html, 'text/html')
    for name, content, mimetype in attachments or []:
        message.attach(name, content, mimetype)
    try:
        message.send()
    except (SMTPException, OSError) as e:
        logger.error(f"Failed to send {template} email to {recipients}: {str(e)}")
        raise EmailDeliveryError(str(e)) from e
    logger.info(f"Email '{subject}' sent to {', '.join(recipients)}")
    return True


def send_quietly(to, template, context=None):
    try:
        return send_email(to, template, context)
    except EmailDeliveryError:
        return False


def send_bulk(messages):
    results = []
    for item in messages:
        try:
            send_email(item['to'], item['template'], item.get('context'), item.get('subject'))
            results.append({'success': True, 'to': item['to']})
        except EmailDeliveryError as e:
            results.append({'success': False, 'to': item['to'], 'error': str(e)})
    return results


def send_verification_email(user, token):
    return send_email(user.email, 'verification', {
        'name': user.get_full_name() or user.email,
        'verification_url': f"{settings.FRONTEND_URL}/verify-email?token={token}",
    })


def send_password_reset_email(user, token):
    return send_email(user.email, 'password_reset', {
        'name': user.get_full_name() or user.email,
        'reset_url': f"{settings.FRONTEND_URL}/reset-password?token={token}",
    })


def send_welcome_email(user, temporary_password=None):
    return send_email(user.email, 'welcome', {
        'name': user.get_full_name() or user.email,
        'organization': user.profile.organization.name,
        'role': user.profile.get_role_display(),
        'temporary_password': temporary_password,
        'login_url': f"{settings.FRONTEND_URL}/login",
    })


def study_context(study):
    return {
        'study_id': study.id,
        'patient_name': study.patient_name or 'Unknown',
        'modality': study.modality,
        'study_description': study.study_description,
        'priority': study.get_priority_display(),
        'due_date': study.sla_due_date,
        'study_url': f"{settings.FRONTEND_URL}/studies/{study.id}",
    }
