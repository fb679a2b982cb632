from datetime import timedelta

import pytest
from django.utils import timezone

from workflow import assignment
from workflow.exceptions import AppError
from workflow.models import Notification, SLA, Study


class TestTurnaround:
    def test_builtin_defaults(self, make_study):
        assert assignment.turnaround_minutes(make_study(priority=Study.PRIORITY_STAT)) == 60
        assert assignment.turnaround_minutes(make_study(priority=Study.PRIORITY_URGENT)) == 240
        assert assignment.turnaround_minutes(make_study()) == 1440
        assert assignment.warning_minutes(make_study()) == 30

    def test_organization_defaults(self, organization, make_study):
        organization.sla_defaults = {'normal': 720, 'urgent': 'bogus'}
        organization.save()

        assert assignment.turnaround_minutes(make_study()) == 720
        assert assignment.turnaround_minutes(make_study(priority=Study.PRIORITY_URGENT)) == 240

    def test_modality_specific_sla_wins(self, organization, make_study):
        SLA.objects.create(organization=organization, name='Any normal', priority='normal',
                           turnaround_time_minutes=600, warning_threshold_minutes=60)
        SLA.objects.create(organization=organization, name='MR normal', priority='normal', modality='MR',
                           turnaround_time_minutes=900, warning_threshold_minutes=45)

        assert assignment.turnaround_minutes(make_study(modality='MR')) == 900
        assert assignment.warning_minutes(make_study(modality='MR')) == 45
        assert assignment.turnaround_minutes(make_study(modality='CT')) == 600

    def test_inactive_sla_ignored(self, organization, make_study):
        SLA.objects.create(organization=organization, name='Old', priority='normal',
                           turnaround_time_minutes=100, warning_threshold_minutes=10, is_active=False)
        assert assignment.turnaround_minutes(make_study()) == 1440

    def test_compute_due_date(self, make_study):
        start = timezone.now()
        due = assignment.compute_sla_due_date(make_study(priority=Study.PRIORITY_URGENT), start)
        assert due == start + timedelta(minutes=240)


class TestAssignStudy:
    def test_assign_resets_sla_markers(self, make_study, radiologist):
        study = make_study(sla_warning_sent_at=timezone.now(), sla_breached_at=timezone.now())

        assignment.assign_study(study, radiologist)

        study.refresh_from_db()
        assert study.status == Study.STATUS_ASSIGNED
        assert study.sla_warning_sent_at is None
        assert study.sla_breached_at is None
        assert Notification.objects.filter(user=radiologist, type='study_assigned').count() == 1

    def test_without_notification(self, make_study, radiologist):
        assignment.assign_study(make_study(), radiologist, notify=False)
        assert not Notification.objects.exists()

    def test_inactive_radiologist(self, make_study, radiologist):
        radiologist.is_active = False
        radiologist.save()
        with pytest.raises(AppError):
            assignment.validate_radiologist(make_study(), radiologist)

    def test_deleted_radiologist(self, make_study, radiologist):
        radiologist.profile.deleted_at = timezone.now()
        radiologist.profile.save()
        with pytest.raises(AppError) as excinfo:
            assignment.validate_radiologist(make_study(), radiologist)
        assert str(excinfo.value.detail) == 'Assignee must be an active radiologist'


class TestRoundRobin:
    def test_starts_with_first_radiologist(self, organization, radiologist, second_radiologist):
        assert assignment.next_radiologist(organization) == radiologist

    def test_follows_latest_assignment(self, organization, make_study, radiologist, second_radiologist):
        make_study(assigned_radiologist=radiologist, assigned_at=timezone.now() - timedelta(hours=1))
        make_study(assigned_radiologist=second_radiologist, assigned_at=timezone.now())

        assert assignment.next_radiologist(organization) == radiologist

    def test_wraps_around(self, organization, make_study, radiologist, second_radiologist):
        make_study(assigned_radiologist=radiologist, assigned_at=timezone.now())
        assert assignment.next_radiologist(organization) == second_radiologist

    def test_no_radiologists(self, organization, admin):
        assert assignment.next_radiologist(organization) is None

    def test_skips_inactive(self, organization, make_study, radiologist, second_radiologist):
        second_radiologist.is_active = False
        second_radiologist.save()
        make_study(assigned_radiologist=radiologist, assigned_at=timezone.now())

        assert assignment.next_radiologist(organization) == radiologist


def test_mark_stat(make_study, radiologist):
    study = make_study(sla_warning_sent_at=timezone.now())

    assignment.mark_stat(study)

    study.refresh_from_db()
    assert study.is_stat is True
    assert study.priority == Study.PRIORITY_STAT
    assert study.sla_warning_sent_at is None
    assert study.sla_due_date <= timezone.now() + timedelta(minutes=60)
    assert Notification.objects.filter(user=radiologist, type='stat_order').exists()
