"""Notification fan-out.

Every notification is stored as a ``Notification`` row first and then pushed
to the recipient's websocket group. Groups are ``org_<id>``, ``user_<id>``
and ``org_<id>_role_<role>``.
"""
import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.conf import settings
from django.contrib.auth.models import User
from django.core.cache import cache
from django.utils import timezone

from . import emails
from .models import Notification, UserProfile

logger = logging.getLogger(__name__)

PRESENCE_KEY = 'presence:org:{org_id}:user:{user_id}'
PRESENCE_TTL = 60 * 60 * 12


def org_group(org_id):
    return f"org_{org_id}"


def user_group(user_id):
    return f"user_{user_id}"


def role_group(org_id, role):
    return f"org_{org_id}_role_{role}"


def push(group, event, data):
    layer = get_channel_layer()
    if layer is None:
        return False
    try:
        async_to_sync(layer.group_send)(group, {'type': 'broadcast.event', 'event': event, 'data': data})
    except Exception as e:
        logger.error(f"Failed to push {event} to {group}: {str(e)}")
        return False
    return True


def serialize_notification(notification):
    return {
        'id': notification.id,
        'type': notification.type,
        'title': notification.title,
        'message': notification.message,
        'data': notification.data,
        'priority': notification.priority,
        'is_read': notification.is_read,
        'created_at': notification.created_at.isoformat() if notification.created_at else None,
    }


def send_to_user(user, type, title, message, data=None, priority='normal',
                 email_template=None, email_context=None):
    profile = user.profile
    notification = Notification.objects.create(
        organization_id=profile.organization_id,
        user=user,
        type=type,
        title=title,
        message=message,
        data=data or {},
        priority=priority,
    )
    push(user_group(user.id), 'notification', serialize_notification(notification))

    if email_template and user.email:
        context = {'name': profile.full_name, **(email_context or {})}
        if emails.send_quietly(user.email, email_template, context):
            notification.is_email_sent = True
            notification.email_sent_at = timezone.now()
            notification.save(update_fields=['is_email_sent', 'email_sent_at'])
    return notification


def active_members(organization, roles):
    return User.objects.filter(
        is_active=True,
        profile__organization=organization,
        profile__role__in=roles,
        profile__deleted_at__isnull=True,
    ).select_related('profile')


def send_to_role(organization, role, type, title, message, **kwargs):
    roles = [role] if isinstance(role, str) else list(role)
    notifications = [
        send_to_user(user, type, title, message, **kwargs)
        for user in active_members(organization, roles)
    ]
    logger.info(f"Sent {type} to {len(notifications)} users with roles {roles} in org {organization.id}")
    return notifications


def broadcast_to_organization(organization_id, event, data):
    return push(org_group(organization_id), event, data)


def study_payload(study):
    return {
        'study_id': study.id,
        'study_instance_uid': study.study_instance_uid,
        'patient_name': study.patient_name,
        'modality': study.modality,
        'priority': study.priority,
        'status': study.status,
        'sla_due_date': study.sla_due_date.isoformat() if study.sla_due_date else None,
    }


def notify_study_assigned(study, radiologist):
    notification = send_to_user(
        radiologist,
        'study_assigned',
        'New Study Assigned',
        f"{study.modality or 'Imaging'} study for {study.patient_name or 'Unknown patient'} has been assigned to you",
        data=study_payload(study),
        priority='urgent' if study.is_stat else 'normal',
        email_template='study_assignment',
        email_context=emails.study_context(study),
    )
    broadcast_to_organization(study.organization_id, 'study_updated', study_payload(study))
    return notification


def notify_stat_order(study):
    notifications = send_to_role(
        study.organization,
        UserProfile.ROLE_RADIOLOGIST,
        'stat_order',
        'STAT Order Received',
        f"STAT {study.modality or 'imaging'} study for {study.patient_name or 'Unknown patient'} requires immediate review",
        data=study_payload(study),
        priority='urgent',
        email_template='stat_order',
        email_context=emails.study_context(study),
    )
    broadcast_to_organization(study.organization_id, 'stat_order', study_payload(study))
    return notifications


def notify_sla_warning(study, minutes_remaining):
    if study.assigned_radiologist is None:
        return None
    context = emails.study_context(study)
    context['minutes_remaining'] = minutes_remaining
    return send_to_user(
        study.assigned_radiologist,
        'sla_warning',
        'SLA Warning',
        f"Study for {study.patient_name or 'Unknown patient'} is due in {minutes_remaining} minutes",
        data={**study_payload(study), 'minutes_remaining': minutes_remaining},
        priority='high',
        email_template='sla_warning',
        email_context=context,
    )


def notify_sla_breached(study):
    payload = study_payload(study)
    message = f"Study for {study.patient_name or 'Unknown patient'} has breached its SLA"
    notifications = []
    if study.assigned_radiologist is not None:
        notifications.append(
            send_to_user(study.assigned_radiologist, 'sla_breached', 'SLA Breached', message, data=payload, priority='urgent')
        )
    notifications += send_to_role(
        study.organization,
        [UserProfile.ROLE_ADMIN, UserProfile.ROLE_MANAGER],
        'sla_breached',
        'SLA Breached',
        message,
        data=payload,
        priority='urgent',
    )
    return notifications


def notify_report_finalized(report):
    study = report.study
    data = {
        'report_id': report.id,
        'report_number': report.report_number,
        'study_id': study.id,
        'is_critical': report.is_critical,
    }
    notifications = send_to_role(
        study.organization,
        [UserProfile.ROLE_ADMIN, UserProfile.ROLE_MANAGER],
        'report_finalized',
        'Report Finalized',
        f"Report {report.report_number} for {study.patient_name or 'Unknown patient'} has been finalized",
        data=data,
        priority='high' if report.is_critical else 'normal',
        email_template='report_finalized',
        email_context={
            'report_number': report.report_number,
            'patient_name': study.patient_name or 'Unknown',
            'radiologist': report.radiologist.get_full_name() or report.radiologist.email,
            'is_critical': report.is_critical,
            'report_url': f"{settings.FRONTEND_URL}/reports/{report.id}",
        },
    )
    broadcast_to_organization(study.organization_id, 'report_finalized', data)
    return notifications


def notify_dispute(dispute):
    report = dispute.report
    data = {
        'dispute_id': dispute.id,
        'dispute_number': dispute.dispute_number,
        'report_id': report.id,
        'study_id': dispute.study_id,
        'status': dispute.status,
    }
    kwargs = {
        'data': data,
        'priority': 'high',
        'email_template': 'dispute_notification',
        'email_context': {
            'dispute_number': dispute.dispute_number,
            'report_number': report.report_number,
            'reason': dispute.reason,
            'dispute_url': f"{settings.FRONTEND_URL}/disputes/{dispute.id}",
        },
    }
    title = 'Report Disputed'
    message = f"Report {report.report_number} has been disputed: {dispute.reason}"
    notifications = [send_to_user(report.radiologist, 'dispute', title, message, **kwargs)]
    notifications += [
        send_to_user(user, 'dispute', title, message, **kwargs)
        for user in active_members(dispute.study.organization, [UserProfile.ROLE_ADMIN, UserProfile.ROLE_MANAGER])
        if user.id not in (report.radiologist_id, dispute.raised_by_id)
    ]
    return notifications


def presence_key(org_id, user_id):
    return PRESENCE_KEY.format(org_id=org_id, user_id=user_id)


def mark_online(org_id, user_id):
    # one counter per user, updated with atomic incr/decr
    key = presence_key(org_id, user_id)
    if cache.add(key, 1, timeout=PRESENCE_TTL):
        return
    try:
        cache.incr(key)
    except ValueError:
        cache.add(key, 1, timeout=PRESENCE_TTL)
    cache.touch(key, PRESENCE_TTL)


def mark_offline(org_id, user_id):
    """Drop one connection; returns True when the user has no sockets left."""
    try:
        remaining = cache.decr(presence_key(org_id, user_id))
    except ValueError:
        return True
    return remaining <= 0


def connected_users(org_id):
    user_ids = UserProfile.objects.filter(organization_id=org_id).values_list('user_id', flat=True)
    keys = {presence_key(org_id, user_id): user_id for user_id in user_ids}
    counts = cache.get_many(list(keys))
    return sorted(keys[key] for key, count in counts.items() if count > 0)


def is_user_online(user):
    return (cache.get(presence_key(user.profile.organization_id, user.id)) or 0) > 0
