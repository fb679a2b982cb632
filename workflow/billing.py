import logging
from datetime import datetime, time, timedelta
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from .exceptions import AppError
from .models import Invoice, Organization, Report, Study

logger = logging.getLogger(__name__)

STUDY_RATE = Decimal('25.00')
REPORT_RATE = Decimal('50.00')
PAYMENT_TERMS_DAYS = 30


def previous_month(today=None):
    today = today or timezone.localdate()
    period_end = today.replace(day=1) - timedelta(days=1)
    return period_end.replace(day=1), period_end


def _period_bounds(period_start, period_end):
    tz = timezone.get_current_timezone()
    start = timezone.make_aware(datetime.combine(period_start, time.min), tz)
    end = timezone.make_aware(datetime.combine(period_end + timedelta(days=1), time.min), tz)
    return start, end


def usage_for_period(organization, period_start, period_end):
    start, end = _period_bounds(period_start, period_end)
    studies = Study.objects.filter(organization=organization, created_at__gte=start, created_at__lt=end)
    reports = Report.objects.filter(
        study__organization=organization,
        finalized_at__gte=start,
        finalized_at__lt=end,
    )
    return {
        'studies': studies.count(),
        'stat_studies': studies.filter(is_stat=True).count(),
        'reports': reports.count(),
        'critical_reports': reports.filter(is_critical=True).count(),
    }


def invoice_number(organization, period_start):
    return f"INV-{organization.code}-{period_start:%Y%m}"


def generate_invoice(organization, period_start, period_end, today=None):
    """Create the invoice for one organization and period; returns None when it already exists."""
    if Invoice.objects.filter(organization=organization, period_start=period_start, period_end=period_end).exists():
        logger.info(f"Invoice for {organization.code} {period_start:%Y-%m} already exists")
        return None

    usage = usage_for_period(organization, period_start, period_end)
    line_items = [
        {
            'description': 'Studies processed',
            'quantity': usage['studies'],
            'unit_price': str(STUDY_RATE),
            'amount': str(STUDY_RATE * usage['studies']),
        },
        {
            'description': 'Reports finalized',
            'quantity': usage['reports'],
            'unit_price': str(REPORT_RATE),
            'amount': str(REPORT_RATE * usage['reports']),
        },
    ]
    amount_due = STUDY_RATE * usage['studies'] + REPORT_RATE * usage['reports']
    today = today or timezone.localdate()

    invoice = Invoice.objects.create(
        organization=organization,
        invoice_number=invoice_number(organization, period_start),
        billing_period='monthly',
        period_start=period_start,
        period_end=period_end,
        amount_due=amount_due,
        line_items=line_items,
        usage_summary={**usage, 'period': f"{period_start:%Y-%m}"},
        due_date=today + timedelta(days=PAYMENT_TERMS_DAYS),
    )
    logger.info(f"Generated invoice {invoice.invoice_number} for {amount_due}")
    return invoice


def generate_monthly_invoices(today=None):
    period_start, period_end = previous_month(today)
    invoices = []
    for organization in Organization.objects.filter(is_active=True):
        try:
            with transaction.atomic():
                invoice = generate_invoice(organization, period_start, period_end, today=today)
        except Exception as e:
            logger.error(f"Billing failed for organization {organization.code}: {str(e)}")
            continue
        if invoice is not None:
            invoices.append(invoice)
    return invoices


def mark_overdue_invoices(today=None):
    today = today or timezone.localdate()
    return Invoice.objects.filter(status=Invoice.STATUS_PENDING, due_date__lt=today).update(
        status=Invoice.STATUS_OVERDUE, updated_at=timezone.now()
    )


def record_payment(invoice, amount=None, payment_method='', payment_reference=''):
    if invoice.status == Invoice.STATUS_PAID:
        raise AppError('Invoice is already paid')
    if invoice.status == Invoice.STATUS_CANCELLED:
        raise AppError('Invoice has been cancelled')
    amount = Decimal(str(amount)) if amount not in (None, '') else invoice.balance
    if amount <= 0:
        raise AppError('Payment amount must be positive')
    invoice.amount_paid += amount
    invoice.payment_method = payment_method or invoice.payment_method
    invoice.payment_reference = payment_reference or invoice.payment_reference
    if invoice.amount_paid >= invoice.amount_due:
        invoice.status = Invoice.STATUS_PAID
        invoice.paid_date = timezone.now()
    invoice.save()
    logger.info(f"Payment of {amount} recorded on {invoice.invoice_number}")
    return invoice


def billing_summary(organization):
    today = timezone.localdate()
    invoices = Invoice.objects.filter(organization=organization)
    outstanding = Decimal('0')
    for invoice in invoices.filter(status__in=[Invoice.STATUS_PENDING, Invoice.STATUS_OVERDUE]):
        outstanding += invoice.balance
    paid = sum((invoice.amount_paid for invoice in invoices.filter(status=Invoice.STATUS_PAID)), Decimal('0'))
    return {
        'total_invoices': invoices.count(),
        'pending': invoices.filter(status=Invoice.STATUS_PENDING).count(),
        'overdue': invoices.filter(status=Invoice.STATUS_OVERDUE).count(),
        'paid': invoices.filter(status=Invoice.STATUS_PAID).count(),
        'outstanding_amount': str(outstanding),
        'total_paid': str(paid),
        'current_period_usage': usage_for_period(organization, today.replace(day=1), today),
    }
