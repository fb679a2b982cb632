import logging
from datetime import timedelta

from django.contrib.auth.models import User
from django.db.models import Q
from django.utils import timezone

from . import notifications
from .exceptions import AppError
from .models import SLA, Study, UserProfile

logger = logging.getLogger(__name__)

DEFAULT_TURNAROUND_MINUTES = {
    Study.PRIORITY_STAT: 60,
    Study.PRIORITY_URGENT: 240,
    Study.PRIORITY_NORMAL: 1440,
}
DEFAULT_WARNING_MINUTES = 30
STAT_TURNAROUND_MINUTES = 60


def matching_sla(study):
    candidates = SLA.objects.filter(
        organization_id=study.organization_id, priority=study.priority, is_active=True
    ).filter(Q(modality=study.modality) | Q(modality=''))
    # modality-specific rows sort ahead of the generic one
    return candidates.order_by('-modality', 'turnaround_time_minutes').first()


def turnaround_minutes(study):
    sla = matching_sla(study)
    if sla is not None:
        return sla.turnaround_time_minutes
    defaults = study.organization.sla_defaults or {}
    try:
        return int(defaults[study.priority])
    except (KeyError, TypeError, ValueError):
        return DEFAULT_TURNAROUND_MINUTES.get(study.priority, DEFAULT_TURNAROUND_MINUTES[Study.PRIORITY_NORMAL])


def warning_minutes(study):
    sla = matching_sla(study)
    if sla is not None:
        return sla.warning_threshold_minutes
    return DEFAULT_WARNING_MINUTES


def compute_sla_due_date(study, start=None):
    start = start or timezone.now()
    return start + timedelta(minutes=turnaround_minutes(study))


def active_radiologists(organization):
    return User.objects.filter(
        is_active=True,
        profile__organization=organization,
        profile__role=UserProfile.ROLE_RADIOLOGIST,
        profile__deleted_at__isnull=True,
    ).order_by('id')


def validate_radiologist(study, radiologist):
    if not radiologist.is_active:
        raise AppError('Radiologist account is inactive')
    profile = getattr(radiologist, 'profile', None)
    if profile is None or profile.role != UserProfile.ROLE_RADIOLOGIST or profile.deleted_at is not None:
        raise AppError('Assignee must be an active radiologist')
    if profile.organization_id != study.organization_id:
        raise AppError('Radiologist not found in this organization', status_code=404)


def assign_study(study, radiologist, assigned_by=None, notify=True):
    validate_radiologist(study, radiologist)
    now = timezone.now()
    study.assigned_radiologist = radiologist
    study.status = Study.STATUS_ASSIGNED
    study.assigned_at = now
    study.sla_due_date = compute_sla_due_date(study, now)
    study.sla_warning_sent_at = None
    study.sla_breached_at = None
    study.save(update_fields=[
        'assigned_radiologist', 'status', 'assigned_at', 'sla_due_date',
        'sla_warning_sent_at', 'sla_breached_at', 'updated_at',
    ])
    actor = assigned_by.email if assigned_by is not None else 'scheduler'
    logger.info(f"Study {study.id} assigned to {radiologist.email} by {actor}, due {study.sla_due_date.isoformat()}")
    if notify:
        notifications.notify_study_assigned(study, radiologist)
    return study


def next_radiologist(organization, radiologists=None):
    """Round-robin pick: the radiologist after the one who got the latest assignment."""
    radiologists = list(radiologists if radiologists is not None else active_radiologists(organization))
    if not radiologists:
        return None
    last = (
        Study.objects.filter(organization=organization, assigned_at__isnull=False, assigned_radiologist__isnull=False)
        .order_by('-assigned_at', '-id')
        .values_list('assigned_radiologist_id', flat=True)
        .first()
    )
    ids = [user.id for user in radiologists]
    if last not in ids:
        return radiologists[0]
    return radiologists[(ids.index(last) + 1) % len(radiologists)]


def mark_stat(study, notify=True):
    now = timezone.now()
    study.is_stat = True
    study.priority = Study.PRIORITY_STAT
    study.sla_due_date = now + timedelta(minutes=STAT_TURNAROUND_MINUTES)
    study.sla_warning_sent_at = None
    study.save(update_fields=['is_stat', 'priority', 'sla_due_date', 'sla_warning_sent_at', 'updated_at'])
    logger.info(f"Study {study.id} escalated to STAT, due {study.sla_due_date.isoformat()}")
    if notify:
        notifications.notify_stat_order(study)
    return study
