"""Periodic maintenance jobs. Each job is a plain function returning a
summary dict so it can be run by the scheduler, from ``manage.py runjob``
or directly in tests."""
import logging
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth.models import User
from django.db.models import Avg, Count
from django.utils import timezone

from . import assignment, billing, notifications
from .models import AuditLog, Notification, Organization, Study, UserProfile

logger = logging.getLogger(__name__)

NOTIFICATION_RETENTION_DAYS = 30
AUDIT_RETENTION_DAYS = 365


def sla_monitoring(now=None):
    now = now or timezone.now()
    active = Study.objects.filter(
        status__in=Study.ACTIVE_STATUSES,
        sla_due_date__isnull=False,
        assigned_radiologist__isnull=False,
    ).select_related('organization', 'assigned_radiologist', 'assigned_radiologist__profile')

    warned = 0
    for study in active.filter(sla_due_date__gt=now, sla_warning_sent_at__isnull=True):
        threshold = assignment.warning_minutes(study)
        remaining = study.sla_due_date - now
        if remaining > timedelta(minutes=threshold):
            continue
        minutes_remaining = max(int(remaining.total_seconds() // 60), 0)
        notifications.notify_sla_warning(study, minutes_remaining)
        study.sla_warning_sent_at = now
        study.save(update_fields=['sla_warning_sent_at', 'updated_at'])
        warned += 1

    breached = 0
    for study in active.filter(sla_due_date__lte=now, sla_breached_at__isnull=True):
        study.sla_breached_at = now
        study.save(update_fields=['sla_breached_at', 'updated_at'])
        notifications.notify_sla_breached(study)
        breached += 1

    if warned or breached:
        logger.info(f"SLA monitoring: {warned} warnings, {breached} breaches")
    return {'warned': warned, 'breached': breached}


def study_assignment(now=None):
    assigned = 0
    for organization in Organization.objects.filter(is_active=True):
        pending = list(
            Study.objects.filter(
                organization=organization,
                status=Study.STATUS_UNREAD,
                assigned_radiologist__isnull=True,
            ).order_by('-is_stat', 'created_at', 'id')
        )
        if not pending:
            continue
        radiologists = list(assignment.active_radiologists(organization).select_related('profile'))
        if not radiologists:
            logger.warning(f"No active radiologists in {organization.code}; {len(pending)} studies waiting")
            continue
        start = assignment.next_radiologist(organization, radiologists)
        index = radiologists.index(start)
        for study in pending:
            radiologist = radiologists[index % len(radiologists)]
            assignment.assign_study(study, radiologist)
            index += 1
            assigned += 1
    if assigned:
        logger.info(f"Auto-assigned {assigned} studies")
    return {'assigned': assigned}


def daily_cleanup(now=None):
    now = now or timezone.now()
    verification = UserProfile.objects.filter(verification_token_expires__lt=now).update(
        verification_token='', verification_token_expires=None
    )
    reset = UserProfile.objects.filter(reset_token_expires__lt=now).update(
        reset_token='', reset_token_expires=None
    )
    logger.info(f"Cleared {verification} verification tokens and {reset} reset tokens")
    return {'verification_tokens': verification, 'reset_tokens': reset}


def notification_cleanup(now=None):
    now = now or timezone.now()
    cutoff = now - timedelta(days=NOTIFICATION_RETENTION_DAYS)
    deleted, _ = Notification.objects.filter(is_read=True, created_at__lt=cutoff).delete()
    logger.info(f"Deleted {deleted} old notifications")
    return {'deleted': deleted}


def audit_cleanup(now=None):
    now = now or timezone.now()
    cutoff = now - timedelta(days=AUDIT_RETENTION_DAYS)
    deleted, _ = AuditLog.objects.filter(created_at__lt=cutoff).delete()
    logger.info(f"Deleted {deleted} audit logs older than {AUDIT_RETENTION_DAYS} days")
    return {'deleted': deleted}


def rating_calculation(now=None):
    rated = (
        User.objects.filter(profile__role=UserProfile.ROLE_RADIOLOGIST)
        .annotate(avg_rating=Avg('ratings_received__rating'), num_ratings=Count('ratings_received'))
        .select_related('profile')
    )
    updated = 0
    for radiologist in rated:
        profile = radiologist.profile
        average = round(radiologist.avg_rating or 0, 2)
        if float(profile.rating_average) != average or profile.rating_count != radiologist.num_ratings:
            profile.rating_average = Decimal(str(average))
            profile.rating_count = radiologist.num_ratings
            profile.save(update_fields=['rating_average', 'rating_count', 'updated_at'])
            updated += 1
    logger.info(f"Recalculated ratings for {updated} radiologists")
    return {'updated': updated}


def monthly_billing(now=None):
    today = timezone.localdate(now) if now else None
    invoices = billing.generate_monthly_invoices(today=today)
    return {'invoices': [invoice.invoice_number for invoice in invoices]}


def invoice_overdue(now=None):
    today = timezone.localdate(now) if now else None
    return {'overdue': billing.mark_overdue_invoices(today=today)}

