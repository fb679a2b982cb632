import uuid

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Count, Q
from django.utils import timezone


class Organization(models.Model):
    TYPE_CHOICES = [
        ('healthcare', 'Healthcare Provider'),
        ('radiology_group', 'Radiology Group'),
    ]

    name = models.CharField(max_length=200)
    code = models.CharField(max_length=50, unique=True)
    type = models.CharField(max_length=30, choices=TYPE_CHOICES, default='healthcare')
    description = models.TextField(blank=True, default='')
    address = models.JSONField(default=dict, blank=True)
    contact_email = models.EmailField(blank=True, default='')
    contact_phone = models.CharField(max_length=30, blank=True, default='')
    license_number = models.CharField(max_length=100, blank=True, default='')
    tax_id = models.CharField(max_length=100, blank=True, default='')
    settings = models.JSONField(default=dict, blank=True)
    branding = models.JSONField(default=dict, blank=True)
    sla_defaults = models.JSONField(default=dict, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return f"{self.name} ({self.code})"

    def save(self, *args, **kwargs):
        if self.code:
            self.code = self.code.strip().upper()
        super().save(*args, **kwargs)


class UserProfile(models.Model):
    ROLE_ADMIN = 'admin'
    ROLE_RADIOLOGIST = 'radiologist'
    ROLE_MANAGER = 'manager'
    ROLE_TECHNICIAN = 'technician'
    ROLE_VIEWER = 'viewer'
    ROLE_CHOICES = [
        (ROLE_ADMIN, 'Admin'),
        (ROLE_RADIOLOGIST, 'Radiologist'),
        (ROLE_MANAGER, 'Manager'),
        (ROLE_TECHNICIAN, 'Technician'),
        (ROLE_VIEWER, 'Viewer'),
    ]

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='profile')
    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name='members')
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default=ROLE_VIEWER)
    phone = models.CharField(max_length=30, blank=True, default='')
    specialization = models.CharField(max_length=200, blank=True, default='')
    credentials = models.JSONField(default=dict, blank=True)
    preferences = models.JSONField(default=dict, blank=True)

    is_verified = models.BooleanField(default=False)
    two_factor_enabled = models.BooleanField(default=False)
    two_factor_secret = models.CharField(max_length=64, blank=True, default='')
    backup_codes = models.JSONField(default=list, blank=True)

    password_changed_at = models.DateTimeField(null=True, blank=True)
    verification_token = models.CharField(max_length=128, blank=True, default='')
    verification_token_expires = models.DateTimeField(null=True, blank=True)
    reset_token = models.CharField(max_length=128, blank=True, default='')
    reset_token_expires = models.DateTimeField(null=True, blank=True)

    rating_average = models.DecimalField(max_digits=3, decimal_places=2, default=0)
    rating_count = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=['organization', 'role'], name='workflow_us_organiz_7c1b2e_idx'),
        ]

    def __str__(self):
        return f"{self.user.email} - {self.role}"

    @property
    def full_name(self):
        return self.user.get_full_name() or self.user.email

    @property
    def is_admin(self):
        return self.role == self.ROLE_ADMIN

    @property
    def is_manager_or_admin(self):
        return self.role in (self.ROLE_ADMIN, self.ROLE_MANAGER)

    def clean(self):
        if self.role == self.ROLE_RADIOLOGIST and self.user_id and not self.user.get_full_name():
            raise ValidationError({"role": "Radiologists must have a first and last name on their account."})


class Study(models.Model):
    PRIORITY_NORMAL = 'normal'
    PRIORITY_URGENT = 'urgent'
    PRIORITY_STAT = 'stat'
    PRIORITY_CHOICES = [
        (PRIORITY_NORMAL, 'Normal'),
        (PRIORITY_URGENT, 'Urgent'),
        (PRIORITY_STAT, 'STAT'),
    ]

    STATUS_UNREAD = 'unread'
    STATUS_ASSIGNED = 'assigned'
    STATUS_IN_PROGRESS = 'in_progress'
    STATUS_COMPLETED = 'completed'
    STATUS_REPORTED = 'reported'
    STATUS_DISPUTED = 'disputed'
    STATUS_CHOICES = [
        (STATUS_UNREAD, 'Unread'),
        (STATUS_ASSIGNED, 'Assigned'),
        (STATUS_IN_PROGRESS, 'In Progress'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_REPORTED, 'Reported'),
        (STATUS_DISPUTED, 'Disputed'),
    ]
    ACTIVE_STATUSES = (STATUS_ASSIGNED, STATUS_IN_PROGRESS)

    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name='studies')
    study_instance_uid = models.CharField(max_length=128, unique=True)
    accession_number = models.CharField(max_length=64, blank=True, default='')
    patient_id = models.CharField(max_length=64, blank=True, default='')
    patient_name = models.CharField(max_length=200, blank=True, default='')
    patient_birth_date = models.DateField(null=True, blank=True)
    patient_sex = models.CharField(max_length=10, blank=True, default='')
    patient_age = models.CharField(max_length=10, blank=True, default='')
    referring_physician = models.CharField(max_length=200, blank=True, default='')
    study_description = models.CharField(max_length=255, blank=True, default='')
    study_date = models.DateField(null=True, blank=True)
    study_time = models.CharField(max_length=20, blank=True, default='')
    modality = models.CharField(max_length=16, blank=True, default='')
    body_part = models.CharField(max_length=64, blank=True, default='')
    institution_name = models.CharField(max_length=200, blank=True, default='')

    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default=PRIORITY_NORMAL)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_UNREAD)
    is_stat = models.BooleanField(default=False)
    clinical_history = models.TextField(blank=True, default='')

    assigned_radiologist = models.ForeignKey(
        User, on_delete=models.SET_NULL, null=True, blank=True, related_name='assigned_studies'
    )
    assigned_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    reported_at = models.DateTimeField(null=True, blank=True)
    sla_due_date = models.DateTimeField(null=True, blank=True)
    sla_warning_sent_at = models.DateTimeField(null=True, blank=True)
    sla_breached_at = models.DateTimeField(null=True, blank=True)

    number_of_series = models.PositiveIntegerField(default=0)
    number_of_instances = models.PositiveIntegerField(default=0)
    total_size_bytes = models.BigIntegerField(default=0)
    storage_path = models.CharField(max_length=500, blank=True, default='')
    dicom_metadata = models.JSONField(default=dict, blank=True)
    is_anonymized = models.BooleanField(default=False)
    anonymization_map = models.JSONField(default=dict, blank=True)

    created_by = models.ForeignKey(
        User, on_delete=models.SET_NULL, null=True, blank=True, related_name='created_studies'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'studies'
        ordering = ['-created_at']
        verbose_name_plural = 'studies'
        indexes = [
            models.Index(fields=['organization', 'status'], name='studies_organiz_3f0d5a_idx'),
            models.Index(fields=['assigned_radiologist', 'status'], name='studies_assigne_8e2c41_idx'),
            models.Index(fields=['priority'], name='studies_priorit_b7a913_idx'),
            models.Index(fields=['sla_due_date'], name='studies_sla_due_5d6e20_idx'),
        ]

    def __str__(self):
        return f"{self.patient_name or 'Unknown'} - {self.modality} - {self.study_instance_uid}"

    @property
    def total_size_mb(self):
        if self.total_size_bytes:
            return round(self.total_size_bytes / (1024 * 1024), 2)
        return 0

    @property
    def is_overdue(self):
        return bool(
            self.sla_due_date
            and self.status in self.ACTIVE_STATUSES
            and self.sla_due_date < timezone.now()
        )

    def refresh_counts(self):
        totals = self.series.aggregate(
            series_count=Count('id', distinct=True),
            instance_count=Count('instances'),
            size=models.Sum('instances__file_size'),
        )
        self.number_of_series = totals['series_count'] or 0
        self.number_of_instances = totals['instance_count'] or 0
        self.total_size_bytes = totals['size'] or 0
        self.save(update_fields=['number_of_series', 'number_of_instances', 'total_size_bytes', 'updated_at'])

    @classmethod
    def get_status_counts(cls, organization):
        rows = cls.objects.filter(organization=organization).values('status').annotate(count=Count('id'))
        return {row['status']: row['count'] for row in rows}


class Series(models.Model):
    study = models.ForeignKey(Study, on_delete=models.CASCADE, related_name='series')
    series_instance_uid = models.CharField(max_length=128, unique=True)
    series_number = models.IntegerField(null=True, blank=True)
    series_description = models.CharField(max_length=255, blank=True, default='')
    modality = models.CharField(max_length=16, blank=True, default='')
    body_part_examined = models.CharField(max_length=64, blank=True, default='')
    protocol_name = models.CharField(max_length=200, blank=True, default='')
    number_of_instances = models.PositiveIntegerField(default=0)
    total_size_bytes = models.BigIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'series'
        ordering = ['series_number', 'id']
        verbose_name_plural = 'series'

    def __str__(self):
        return f"Series {self.series_number or '-'} {self.series_description}"

    def refresh_counts(self):
        totals = self.instances.aggregate(count=Count('id'), size=models.Sum('file_size'))
        self.number_of_instances = totals['count'] or 0
        self.total_size_bytes = totals['size'] or 0
        self.save(update_fields=['number_of_instances', 'total_size_bytes', 'updated_at'])


class Instance(models.Model):
    series = models.ForeignKey(Series, on_delete=models.CASCADE, related_name='instances')
    sop_instance_uid = models.CharField(max_length=128, unique=True)
    sop_class_uid = models.CharField(max_length=128, blank=True, default='')
    instance_number = models.IntegerField(null=True, blank=True)
    transfer_syntax_uid = models.CharField(max_length=128, blank=True, default='')
    rows = models.IntegerField(null=True, blank=True)
    columns = models.IntegerField(null=True, blank=True)
    pixel_spacing = models.JSONField(default=list, blank=True)
    slice_thickness = models.FloatField(null=True, blank=True)
    image_position = models.JSONField(default=list, blank=True)
    image_orientation = models.JSONField(default=list, blank=True)
    window_center = models.FloatField(null=True, blank=True)
    window_width = models.FloatField(null=True, blank=True)
    file_path = models.CharField(max_length=500)
    file_size = models.BigIntegerField(default=0)
    checksum = models.CharField(max_length=64, blank=True, default='')
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'instances'
        ordering = ['instance_number', 'id']

    def __str__(self):
        return self.sop_instance_uid

    @property
    def file_size_mb(self):
        if self.file_size:
            return round(self.file_size / (1024 * 1024), 2)
        return 0


class ReportTemplate(models.Model):
    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name='report_templates')
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True, default='')
    modality = models.CharField(max_length=16, blank=True, default='')
    body_part = models.CharField(max_length=64, blank=True, default='')
    category = models.CharField(max_length=100, blank=True, default='')
    template_content = models.TextField(blank=True, default='')
    sections = models.JSONField(default=list, blank=True)
    macros = models.JSONField(default=dict, blank=True)
    language = models.CharField(max_length=10, default='en')
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['modality', 'name']

    def __str__(self):
        return f"{self.name} ({self.modality or 'any'})"


def generate_report_number():
    return f"RPT-{timezone.now():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


class Report(models.Model):
    STATUS_DRAFT = 'draft'
    STATUS_PENDING_REVIEW = 'pending_review'
    STATUS_FINALIZED = 'finalized'
    STATUS_DISPUTED = 'disputed'
    STATUS_CHOICES = [
        (STATUS_DRAFT, 'Draft'),
        (STATUS_PENDING_REVIEW, 'Pending Review'),
        (STATUS_FINALIZED, 'Finalized'),
        (STATUS_DISPUTED, 'Disputed'),
    ]

    study = models.ForeignKey(Study, on_delete=models.CASCADE, related_name='reports')
    radiologist = models.ForeignKey(User, on_delete=models.PROTECT, related_name='reports')
    template = models.ForeignKey(ReportTemplate, on_delete=models.SET_NULL, null=True, blank=True)
    report_number = models.CharField(max_length=40, unique=True, default=generate_report_number)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_DRAFT)

    clinical_history = models.TextField(blank=True, default='')
    technique = models.TextField(blank=True, default='')
    comparison = models.TextField(blank=True, default='')
    findings = models.TextField(blank=True, default='')
    impression = models.TextField(blank=True, default='')
    recommendations = models.TextField(blank=True, default='')
    measurements = models.JSONField(default=dict, blank=True)
    annotations = models.JSONField(default=list, blank=True)
    language = models.CharField(max_length=10, default='en')

    is_urgent = models.BooleanField(default=False)
    is_critical = models.BooleanField(default=False)
    critical_findings = models.TextField(blank=True, default='')

    finalized_at = models.DateTimeField(null=True, blank=True)
    finalized_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    signed_at = models.DateTimeField(null=True, blank=True)
    signed_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    signature_type = models.CharField(max_length=20, blank=True, default='')
    signature_data = models.TextField(blank=True, default='')

    revision_history = models.JSONField(default=list, blank=True)
    version = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    CONTENT_FIELDS = (
        'clinical_history', 'technique', 'comparison', 'findings',
        'impression', 'recommendations', 'measurements',
    )

    class Meta:
        db_table = 'reports'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['radiologist', 'status'], name='reports_radiolo_4a8f17_idx'),
        ]

    def __str__(self):
        return f"{self.report_number} ({self.status})"

    @property
    def is_finalized(self):
        return self.status == self.STATUS_FINALIZED

    @property
    def is_locked(self):
        # content changes only through revisions once finalized, disputed included
        return self.status in (self.STATUS_FINALIZED, self.STATUS_DISPUTED) or self.finalized_at is not None

    @property
    def is_signed(self):
        return self.signed_at is not None

    def snapshot(self):
        data = {field: getattr(self, field) for field in self.CONTENT_FIELDS}
        data['version'] = self.version
        data['status'] = self.status
        return data


class SLA(models.Model):
    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name='slas')
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True, default='')
    priority = models.CharField(max_length=10, choices=Study.PRIORITY_CHOICES)
    modality = models.CharField(max_length=16, blank=True, default='')
    turnaround_time_minutes = models.PositiveIntegerField()
    warning_threshold_minutes = models.PositiveIntegerField(default=30)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'SLA'
        verbose_name_plural = 'SLAs'
        ordering = ['priority', 'modality']

    def __str__(self):
        return f"{self.name}: {self.priority}/{self.modality or 'any'} {self.turnaround_time_minutes}m"

    def clean(self):
        if self.warning_threshold_minutes and self.warning_threshold_minutes >= self.turnaround_time_minutes:
            raise ValidationError({'warning_threshold_minutes': "Warning threshold must be shorter than the turnaround time."})


class Rating(models.Model):
    radiologist = models.ForeignKey(User, on_delete=models.CASCADE, related_name='ratings_received')
    study = models.ForeignKey(Study, on_delete=models.CASCADE, related_name='ratings')
    report = models.ForeignKey(Report, on_delete=models.SET_NULL, null=True, blank=True, related_name='ratings')
    rated_by = models.ForeignKey(User, on_delete=models.CASCADE, related_name='ratings_given')
    rating = models.PositiveSmallIntegerField(validators=[MinValueValidator(1), MaxValueValidator(5)])
    feedback = models.TextField(blank=True, default='')
    criteria_scores = models.JSONField(default=dict, blank=True)
    category = models.CharField(max_length=50, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['radiologist', 'study', 'rated_by'], name='unique_rating_per_rater'),
            models.CheckConstraint(condition=Q(rating__gte=1) & Q(rating__lte=5), name='rating_between_1_and_5'),
        ]

    def __str__(self):
        return f"{self.rating}/5 for {self.radiologist} on {self.study_id}"


class Invoice(models.Model):
    STATUS_PENDING = 'pending'
    STATUS_PAID = 'paid'
    STATUS_OVERDUE = 'overdue'
    STATUS_CANCELLED = 'cancelled'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_PAID, 'Paid'),
        (STATUS_OVERDUE, 'Overdue'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name='invoices')
    invoice_number = models.CharField(max_length=60, unique=True)
    billing_period = models.CharField(max_length=20, default='monthly')
    period_start = models.DateField()
    period_end = models.DateField()
    amount_due = models.DecimalField(max_digits=12, decimal_places=2)
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default='USD')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    line_items = models.JSONField(default=list, blank=True)
    usage_summary = models.JSONField(default=dict, blank=True)
    due_date = models.DateField()
    paid_date = models.DateTimeField(null=True, blank=True)
    payment_method = models.CharField(max_length=50, blank=True, default='')
    payment_reference = models.CharField(max_length=100, blank=True, default='')
    notes = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'billing'
        ordering = ['-period_start']
        constraints = [
            models.UniqueConstraint(fields=['organization', 'period_start', 'period_end'], name='unique_invoice_period'),
        ]

    def __str__(self):
        return f"{self.invoice_number} ({self.status})"

    @property
    def balance(self):
        return self.amount_due - self.amount_paid


class AuditLog(models.Model):
    organization = models.ForeignKey(Organization, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='audit_logs')
    action = models.CharField(max_length=255)
    resource_type = models.CharField(max_length=50, blank=True, default='')
    resource_id = models.CharField(max_length=64, blank=True, default='')
    old_values = models.JSONField(null=True, blank=True)
    new_values = models.JSONField(null=True, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=500, blank=True, default='')
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['organization', 'created_at'], name='audit_logs_organiz_1e9b6c_idx'),
            models.Index(fields=['resource_type', 'resource_id'], name='audit_logs_resourc_c24d87_idx'),
        ]

    def __str__(self):
        return f"{self.created_at:%Y-%m-%d %H:%M} {self.action}"


def generate_dispute_number():
    return f"DSP-{timezone.now():%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


class Dispute(models.Model):
    STATUS_OPEN = 'open'
    STATUS_INVESTIGATING = 'investigating'
    STATUS_RESOLVED = 'resolved'
    STATUS_CLOSED = 'closed'
    STATUS_CHOICES = [
        (STATUS_OPEN, 'Open'),
        (STATUS_INVESTIGATING, 'Investigating'),
        (STATUS_RESOLVED, 'Resolved'),
        (STATUS_CLOSED, 'Closed'),
    ]
    PRIORITY_CHOICES = [
        ('low', 'Low'),
        ('medium', 'Medium'),
        ('high', 'High'),
    ]

    dispute_number = models.CharField(max_length=40, unique=True, default=generate_dispute_number)
    report = models.ForeignKey(Report, on_delete=models.CASCADE, related_name='disputes')
    study = models.ForeignKey(Study, on_delete=models.CASCADE, related_name='disputes')
    raised_by = models.ForeignKey(User, on_delete=models.CASCADE, related_name='disputes_raised')
    assigned_to = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='disputes_assigned')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_OPEN)
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default='medium')
    reason = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    evidence = models.JSONField(default=list, blank=True)
    resolution = models.TextField(blank=True, default='')
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolved_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.dispute_number} ({self.status})"


class Notification(models.Model):
    PRIORITY_CHOICES = [
        ('low', 'Low'),
        ('normal', 'Normal'),
        ('high', 'High'),
        ('urgent', 'Urgent'),
    ]

    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name='notifications')
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='notifications')
    type = models.CharField(max_length=50)
    title = models.CharField(max_length=255)
    message = models.TextField()
    data = models.JSONField(default=dict, blank=True)
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default='normal')
    is_read = models.BooleanField(default=False)
    read_at = models.DateTimeField(null=True, blank=True)
    is_email_sent = models.BooleanField(default=False)
    email_sent_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'notifications'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'is_read'], name='notificatio_user_id_5b3a90_idx'),
        ]

    def __str__(self):
        return f"{self.type} -> {self.user_id}: {self.title}"

    def mark_read(self):
        if not self.is_read:
            self.is_read = True
            self.read_at = timezone.now()
            self.save(update_fields=['is_read', 'read_at'])
