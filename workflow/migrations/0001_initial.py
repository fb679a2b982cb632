import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

import workflow.models


PRIORITY_CHOICES = [('normal', 'Normal'), ('urgent', 'Urgent'), ('stat', 'STAT')]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Organization',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=200)),
                ('code', models.CharField(max_length=50, unique=True)),
                ('type', models.CharField(choices=[('healthcare', 'Healthcare Provider'), ('radiology_group', 'Radiology Group')], default='healthcare', max_length=30)),
                ('description', models.TextField(blank=True, default='')),
                ('address', models.JSONField(blank=True, default=dict)),
                ('contact_email', models.EmailField(blank=True, default='', max_length=254)),
                ('contact_phone', models.CharField(blank=True, default='', max_length=30)),
                ('license_number', models.CharField(blank=True, default='', max_length=100)),
                ('tax_id', models.CharField(blank=True, default='', max_length=100)),
                ('settings', models.JSONField(blank=True, default=dict)),
                ('branding', models.JSONField(blank=True, default=dict)),
                ('sla_defaults', models.JSONField(blank=True, default=dict)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='UserProfile',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('role', models.CharField(choices=[('admin', 'Admin'), ('radiologist', 'Radiologist'), ('manager', 'Manager'), ('technician', 'Technician'), ('viewer', 'Viewer')], default='viewer', max_length=20)),
                ('phone', models.CharField(blank=True, default='', max_length=30)),
                ('specialization', models.CharField(blank=True, default='', max_length=200)),
                ('credentials', models.JSONField(blank=True, default=dict)),
                ('preferences', models.JSONField(blank=True, default=dict)),
                ('is_verified', models.BooleanField(default=False)),
                ('two_factor_enabled', models.BooleanField(default=False)),
                ('two_factor_secret', models.CharField(blank=True, default='', max_length=64)),
                ('backup_codes', models.JSONField(blank=True, default=list)),
                ('password_changed_at', models.DateTimeField(blank=True, null=True)),
                ('verification_token', models.CharField(blank=True, default='', max_length=128)),
                ('verification_token_expires', models.DateTimeField(blank=True, null=True)),
                ('reset_token', models.CharField(blank=True, default='', max_length=128)),
                ('reset_token_expires', models.DateTimeField(blank=True, null=True)),
                ('rating_average', models.DecimalField(decimal_places=2, default=0, max_digits=3)),
                ('rating_count', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='members', to='workflow.organization')),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='profile', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'indexes': [models.Index(fields=['organization', 'role'], name='workflow_us_organiz_7c1b2e_idx')],
            },
        ),
        migrations.CreateModel(
            name='Study',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('study_instance_uid', models.CharField(max_length=128, unique=True)),
                ('accession_number', models.CharField(blank=True, default='', max_length=64)),
                ('patient_id', models.CharField(blank=True, default='', max_length=64)),
                ('patient_name', models.CharField(blank=True, default='', max_length=200)),
                ('patient_birth_date', models.DateField(blank=True, null=True)),
                ('patient_sex', models.CharField(blank=True, default='', max_length=10)),
                ('patient_age', models.CharField(blank=True, default='', max_length=10)),
                ('referring_physician', models.CharField(blank=True, default='', max_length=200)),
                ('study_description', models.CharField(blank=True, default='', max_length=255)),
                ('study_date', models.DateField(blank=True, null=True)),
                ('study_time', models.CharField(blank=True, default='', max_length=20)),
                ('modality', models.CharField(blank=True, default='', max_length=16)),
                ('body_part', models.CharField(blank=True, default='', max_length=64)),
                ('institution_name', models.CharField(blank=True, default='', max_length=200)),
                ('priority', models.CharField(choices=PRIORITY_CHOICES, default='normal', max_length=10)),
                ('status', models.CharField(choices=[('unread', 'Unread'), ('assigned', 'Assigned'), ('in_progress', 'In Progress'), ('completed', 'Completed'), ('reported', 'Reported'), ('disputed', 'Disputed')], default='unread', max_length=20)),
                ('is_stat', models.BooleanField(default=False)),
                ('clinical_history', models.TextField(blank=True, default='')),
                ('assigned_at', models.DateTimeField(blank=True, null=True)),
                ('started_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('reported_at', models.DateTimeField(blank=True, null=True)),
                ('sla_due_date', models.DateTimeField(blank=True, null=True)),
                ('sla_warning_sent_at', models.DateTimeField(blank=True, null=True)),
                ('sla_breached_at', models.DateTimeField(blank=True, null=True)),
                ('number_of_series', models.PositiveIntegerField(default=0)),
                ('number_of_instances', models.PositiveIntegerField(default=0)),
                ('total_size_bytes', models.BigIntegerField(default=0)),
                ('storage_path', models.CharField(blank=True, default='', max_length=500)),
                ('dicom_metadata', models.JSONField(blank=True, default=dict)),
                ('is_anonymized', models.BooleanField(default=False)),
                ('anonymization_map', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('assigned_radiologist', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='assigned_studies', to=settings.AUTH_USER_MODEL)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_studies', to=settings.AUTH_USER_MODEL)),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='studies', to='workflow.organization')),
            ],
            options={
                'db_table': 'studies',
                'ordering': ['-created_at'],
                'verbose_name_plural': 'studies',
                'indexes': [
                    models.Index(fields=['organization', 'status'], name='studies_organiz_3f0d5a_idx'),
                    models.Index(fields=['assigned_radiologist', 'status'], name='studies_assigne_8e2c41_idx'),
                    models.Index(fields=['priority'], name='studies_priorit_b7a913_idx'),
                    models.Index(fields=['sla_due_date'], name='studies_sla_due_5d6e20_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Series',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('series_instance_uid', models.CharField(max_length=128, unique=True)),
                ('series_number', models.IntegerField(blank=True, null=True)),
                ('series_description', models.CharField(blank=True, default='', max_length=255)),
                ('modality', models.CharField(blank=True, default='', max_length=16)),
                ('body_part_examined', models.CharField(blank=True, default='', max_length=64)),
                ('protocol_name', models.CharField(blank=True, default='', max_length=200)),
                ('number_of_instances', models.PositiveIntegerField(default=0)),
                ('total_size_bytes', models.BigIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('study', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='series', to='workflow.study')),
            ],
            options={
                'db_table': 'series',
                'ordering': ['series_number', 'id'],
                'verbose_name_plural': 'series',
            },
        ),
        migrations.CreateModel(
            name='Instance',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sop_instance_uid', models.CharField(max_length=128, unique=True)),
                ('sop_class_uid', models.CharField(blank=True, default='', max_length=128)),
                ('instance_number', models.IntegerField(blank=True, null=True)),
                ('transfer_syntax_uid', models.CharField(blank=True, default='', max_length=128)),
                ('rows', models.IntegerField(blank=True, null=True)),
                ('columns', models.IntegerField(blank=True, null=True)),
                ('pixel_spacing', models.JSONField(blank=True, default=list)),
                ('slice_thickness', models.FloatField(blank=True, null=True)),
                ('image_position', models.JSONField(blank=True, default=list)),
                ('image_orientation', models.JSONField(blank=True, default=list)),
                ('window_center', models.FloatField(blank=True, null=True)),
                ('window_width', models.FloatField(blank=True, null=True)),
                ('file_path', models.CharField(max_length=500)),
                ('file_size', models.BigIntegerField(default=0)),
                ('checksum', models.CharField(blank=True, default='', max_length=64)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('series', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='instances', to='workflow.series')),
            ],
            options={
                'db_table': 'instances',
                'ordering': ['instance_number', 'id'],
            },
        ),
        migrations.CreateModel(
            name='ReportTemplate',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True, default='')),
                ('modality', models.CharField(blank=True, default='', max_length=16)),
                ('body_part', models.CharField(blank=True, default='', max_length=64)),
                ('category', models.CharField(blank=True, default='', max_length=100)),
                ('template_content', models.TextField(blank=True, default='')),
                ('sections', models.JSONField(blank=True, default=list)),
                ('macros', models.JSONField(blank=True, default=dict)),
                ('language', models.CharField(default='en', max_length=10)),
                ('is_default', models.BooleanField(default=False)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='report_templates', to='workflow.organization')),
            ],
            options={
                'ordering': ['modality', 'name'],
            },
        ),
        migrations.CreateModel(
            name='Report',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('report_number', models.CharField(default=workflow.models.generate_report_number, max_length=40, unique=True)),
                ('status', models.CharField(choices=[('draft', 'Draft'), ('pending_review', 'Pending Review'), ('finalized', 'Finalized'), ('disputed', 'Disputed')], default='draft', max_length=20)),
                ('clinical_history', models.TextField(blank=True, default='')),
                ('technique', models.TextField(blank=True, default='')),
                ('comparison', models.TextField(blank=True, default='')),
                ('findings', models.TextField(blank=True, default='')),
                ('impression', models.TextField(blank=True, default='')),
                ('recommendations', models.TextField(blank=True, default='')),
                ('measurements', models.JSONField(blank=True, default=dict)),
                ('annotations', models.JSONField(blank=True, default=list)),
                ('language', models.CharField(default='en', max_length=10)),
                ('is_urgent', models.BooleanField(default=False)),
                ('is_critical', models.BooleanField(default=False)),
                ('critical_findings', models.TextField(blank=True, default='')),
                ('finalized_at', models.DateTimeField(blank=True, null=True)),
                ('signed_at', models.DateTimeField(blank=True, null=True)),
                ('signature_type', models.CharField(blank=True, default='', max_length=20)),
                ('signature_data', models.TextField(blank=True, default='')),
                ('revision_history', models.JSONField(blank=True, default=list)),
                ('version', models.PositiveIntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('finalized_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('radiologist', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='reports', to=settings.AUTH_USER_MODEL)),
                ('signed_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('study', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='reports', to='workflow.study')),
                ('template', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, to='workflow.reporttemplate')),
            ],
            options={
                'db_table': 'reports',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['radiologist', 'status'], name='reports_radiolo_4a8f17_idx')],
            },
        ),
        migrations.CreateModel(
            name='SLA',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True, default='')),
                ('priority', models.CharField(choices=PRIORITY_CHOICES, max_length=10)),
                ('modality', models.CharField(blank=True, default='', max_length=16)),
                ('turnaround_time_minutes', models.PositiveIntegerField()),
                ('warning_threshold_minutes', models.PositiveIntegerField(default=30)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='slas', to='workflow.organization')),
            ],
            options={
                'verbose_name': 'SLA',
                'verbose_name_plural': 'SLAs',
                'ordering': ['priority', 'modality'],
            },
        ),
        migrations.CreateModel(
            name='Rating',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('rating', models.PositiveSmallIntegerField(validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(5)])),
                ('feedback', models.TextField(blank=True, default='')),
                ('criteria_scores', models.JSONField(blank=True, default=dict)),
                ('category', models.CharField(blank=True, default='', max_length=50)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('radiologist', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='ratings_received', to=settings.AUTH_USER_MODEL)),
                ('rated_by', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='ratings_given', to=settings.AUTH_USER_MODEL)),
                ('report', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='ratings', to='workflow.report')),
                ('study', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='ratings', to='workflow.study')),
            ],
            options={
                'ordering': ['-created_at'],
                'constraints': [
                    models.UniqueConstraint(fields=('radiologist', 'study', 'rated_by'), name='unique_rating_per_rater'),
                    models.CheckConstraint(condition=models.Q(('rating__gte', 1), ('rating__lte', 5)), name='rating_between_1_and_5'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Invoice',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('invoice_number', models.CharField(max_length=60, unique=True)),
                ('billing_period', models.CharField(default='monthly', max_length=20)),
                ('period_start', models.DateField()),
                ('period_end', models.DateField()),
                ('amount_due', models.DecimalField(decimal_places=2, max_digits=12)),
                ('amount_paid', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('currency', models.CharField(default='USD', max_length=3)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('paid', 'Paid'), ('overdue', 'Overdue'), ('cancelled', 'Cancelled')], default='pending', max_length=20)),
                ('line_items', models.JSONField(blank=True, default=list)),
                ('usage_summary', models.JSONField(blank=True, default=dict)),
                ('due_date', models.DateField()),
                ('paid_date', models.DateTimeField(blank=True, null=True)),
                ('payment_method', models.CharField(blank=True, default='', max_length=50)),
                ('payment_reference', models.CharField(blank=True, default='', max_length=100)),
                ('notes', models.TextField(blank=True, default='')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='invoices', to='workflow.organization')),
            ],
            options={
                'db_table': 'billing',
                'ordering': ['-period_start'],
                'constraints': [
                    models.UniqueConstraint(fields=('organization', 'period_start', 'period_end'), name='unique_invoice_period'),
                ],
            },
        ),
        migrations.CreateModel(
            name='AuditLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('action', models.CharField(max_length=255)),
                ('resource_type', models.CharField(blank=True, default='', max_length=50)),
                ('resource_id', models.CharField(blank=True, default='', max_length=64)),
                ('old_values', models.JSONField(blank=True, null=True)),
                ('new_values', models.JSONField(blank=True, null=True)),
                ('ip_address', models.GenericIPAddressField(blank=True, null=True)),
                ('user_agent', models.CharField(blank=True, default='', max_length=500)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('organization', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='workflow.organization')),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='audit_logs', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'audit_logs',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['organization', 'created_at'], name='audit_logs_organiz_1e9b6c_idx'),
                    models.Index(fields=['resource_type', 'resource_id'], name='audit_logs_resourc_c24d87_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Dispute',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('dispute_number', models.CharField(default=workflow.models.generate_dispute_number, max_length=40, unique=True)),
                ('status', models.CharField(choices=[('open', 'Open'), ('investigating', 'Investigating'), ('resolved', 'Resolved'), ('closed', 'Closed')], default='open', max_length=20)),
                ('priority', models.CharField(choices=[('low', 'Low'), ('medium', 'Medium'), ('high', 'High')], default='medium', max_length=10)),
                ('reason', models.CharField(max_length=255)),
                ('description', models.TextField(blank=True, default='')),
                ('evidence', models.JSONField(blank=True, default=list)),
                ('resolution', models.TextField(blank=True, default='')),
                ('resolved_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('assigned_to', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='disputes_assigned', to=settings.AUTH_USER_MODEL)),
                ('raised_by', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='disputes_raised', to=settings.AUTH_USER_MODEL)),
                ('report', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='disputes', to='workflow.report')),
                ('resolved_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('study', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='disputes', to='workflow.study')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Notification',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('type', models.CharField(max_length=50)),
                ('title', models.CharField(max_length=255)),
                ('message', models.TextField()),
                ('data', models.JSONField(blank=True, default=dict)),
                ('priority', models.CharField(choices=[('low', 'Low'), ('normal', 'Normal'), ('high', 'High'), ('urgent', 'Urgent')], default='normal', max_length=10)),
                ('is_read', models.BooleanField(default=False)),
                ('read_at', models.DateTimeField(blank=True, null=True)),
                ('is_email_sent', models.BooleanField(default=False)),
                ('email_sent_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='notifications', to='workflow.organization')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='notifications', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'notifications',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['user', 'is_read'], name='notificatio_user_id_5b3a90_idx')],
            },
        ),
    ]
