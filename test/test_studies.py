from datetime import timedelta

import pytest
from django.utils import timezone

from workflow import dicom
from workflow.models import Notification, SLA, Study, UserProfile


def study_payload(**overrides):
    payload = {
        'study_instance_uid': '1.2.826.0.1.3680043.8.498.1001',
        'patient_name': 'Smith^John',
        'patient_id': 'MRN-1001',
        'modality': 'CT',
        'study_description': 'CT HEAD',
    }
    payload.update(overrides)
    return payload


class TestCreateStudy:
    def test_manager_creates_study(self, client_for, manager):
        response = client_for(manager).post('/api/studies/', study_payload(), format='json')

        assert response.status_code == 201
        study = Study.objects.get(study_instance_uid='1.2.826.0.1.3680043.8.498.1001')
        assert study.status == Study.STATUS_UNREAD
        assert study.created_by == manager
        assert study.organization == manager.profile.organization
        assert response.data['study']['id'] == study.id

    def test_duplicate_uid(self, client_for, technician):
        client = client_for(technician)
        client.post('/api/studies/', study_payload(), format='json')
        response = client.post('/api/studies/', study_payload(), format='json')

        assert response.status_code == 409
        assert response.data['error'] == 'Study with this StudyInstanceUID already exists'

    @pytest.mark.parametrize('role', [UserProfile.ROLE_RADIOLOGIST, UserProfile.ROLE_VIEWER])
    def test_roles_without_intake(self, client_for, make_user, role):
        response = client_for(make_user(role)).post('/api/studies/', study_payload(), format='json')
        assert response.status_code == 403

    def test_missing_fields(self, client_for, manager):
        response = client_for(manager).post('/api/studies/', {'patient_name': 'X'}, format='json')
        assert response.status_code == 400
        assert 'study_instance_uid' in response.data['details']

    def test_stat_order_alerts_radiologists(self, client_for, manager, radiologist, second_radiologist):
        before = timezone.now()
        response = client_for(manager).post('/api/studies/', study_payload(priority='stat'), format='json')

        assert response.status_code == 201
        study = Study.objects.get()
        assert study.is_stat is True
        assert study.priority == Study.PRIORITY_STAT
        assert before + timedelta(minutes=59) < study.sla_due_date <= timezone.now() + timedelta(minutes=60)
        recipients = set(Notification.objects.filter(type='stat_order').values_list('user_id', flat=True))
        assert recipients == {radiologist.id, second_radiologist.id}


class TestListStudies:
    def test_stat_studies_first(self, client_for, manager, make_study):
        normal = make_study()
        stat = make_study(is_stat=True, priority=Study.PRIORITY_STAT)

        response = client_for(manager).get('/api/studies/')

        assert response.status_code == 200
        assert [row['id'] for row in response.data['results']] == [stat.id, normal.id]
        assert response.data['pagination']['total'] == 2

    def test_radiologist_worklist(self, client_for, radiologist, second_radiologist, make_study):
        mine = make_study(status=Study.STATUS_ASSIGNED, assigned_radiologist=radiologist)
        make_study(status=Study.STATUS_ASSIGNED, assigned_radiologist=second_radiologist)
        open_study = make_study()

        response = client_for(radiologist).get('/api/studies/')

        assert {row['id'] for row in response.data['results']} == {mine.id, open_study.id}

    def test_comma_separated_filters(self, client_for, manager, make_study):
        unread = make_study(modality='MR')
        assigned = make_study(status=Study.STATUS_ASSIGNED)
        make_study(status=Study.STATUS_COMPLETED)

        client = client_for(manager)
        by_status = client.get('/api/studies/', {'status': 'unread,assigned'})
        by_modality = client.get('/api/studies/', {'modality': 'MR'})
        by_search = client.get('/api/studies/', {'search': unread.patient_id})

        assert {row['id'] for row in by_status.data['results']} == {unread.id, assigned.id}
        assert [row['id'] for row in by_modality.data['results']] == [unread.id]
        assert [row['id'] for row in by_search.data['results']] == [unread.id]

    def test_other_organization_hidden(self, client_for, manager, make_study, other_organization):
        foreign = make_study(org=other_organization)
        client = client_for(manager)

        assert client.get('/api/studies/').data['pagination']['total'] == 0
        assert client.get(f'/api/studies/{foreign.id}/').status_code == 404

    def test_retrieve_includes_series(self, client_for, manager, organization, dicom_content):
        instance = dicom.store_instance(organization, dicom_content())
        study = instance.series.study

        response = client_for(manager).get(f'/api/studies/{study.id}/')

        assert response.status_code == 200
        assert response.data['series'][0]['instances'][0]['sop_instance_uid'] == instance.sop_instance_uid
        assert response.data['report_count'] == 0


class TestAssignment:
    def test_manager_assigns(self, client_for, manager, radiologist, make_study):
        study = make_study()

        response = client_for(manager).post(
            f'/api/studies/{study.id}/assign/', {'radiologist_id': radiologist.id}, format='json'
        )

        assert response.status_code == 200
        study.refresh_from_db()
        assert study.assigned_radiologist == radiologist
        assert study.status == Study.STATUS_ASSIGNED
        assert study.sla_due_date - study.assigned_at == timedelta(minutes=1440)
        notification = Notification.objects.get(user=radiologist)
        assert notification.type == 'study_assigned'

    def test_uses_matching_sla(self, client_for, manager, radiologist, make_study, organization):
        SLA.objects.create(organization=organization, name='CT normal', priority='normal', modality='CT',
                           turnaround_time_minutes=180, warning_threshold_minutes=20)
        study = make_study()

        client_for(manager).post(f'/api/studies/{study.id}/assign/', {'radiologist_id': radiologist.id}, format='json')

        study.refresh_from_db()
        assert study.sla_due_date - study.assigned_at == timedelta(minutes=180)

    def test_assignee_must_be_radiologist(self, client_for, manager, technician, make_study):
        study = make_study()
        response = client_for(manager).post(
            f'/api/studies/{study.id}/assign/', {'radiologist_id': technician.id}, format='json'
        )
        assert response.status_code == 400
        assert response.data['error'] == 'Assignee must be an active radiologist'

    def test_assignee_from_other_organization(self, client_for, manager, make_user, other_organization, make_study):
        outsider = make_user(UserProfile.ROLE_RADIOLOGIST, org=other_organization)
        study = make_study()
        response = client_for(manager).post(
            f'/api/studies/{study.id}/assign/', {'radiologist_id': outsider.id}, format='json'
        )
        assert response.status_code == 404

    def test_technician_cannot_assign(self, client_for, technician, radiologist, make_study):
        study = make_study()
        response = client_for(technician).post(
            f'/api/studies/{study.id}/assign/', {'radiologist_id': radiologist.id}, format='json'
        )
        assert response.status_code == 403

    def test_reported_study_cannot_be_reassigned(self, client_for, manager, radiologist, make_study):
        study = make_study(status=Study.STATUS_REPORTED)
        response = client_for(manager).post(
            f'/api/studies/{study.id}/assign/', {'radiologist_id': radiologist.id}, format='json'
        )
        assert response.status_code == 400


class TestRadiologistWorkflow:
    def test_take_start_complete(self, client_for, radiologist, make_study):
        study = make_study()
        client = client_for(radiologist)

        taken = client.post(f'/api/studies/{study.id}/take/')
        started = client.post(f'/api/studies/{study.id}/start/')
        completed = client.post(f'/api/studies/{study.id}/complete/')

        assert taken.status_code == 200
        assert started.status_code == 200
        assert completed.status_code == 200
        study.refresh_from_db()
        assert study.assigned_radiologist == radiologist
        assert study.status == Study.STATUS_COMPLETED
        assert study.assigned_at <= study.started_at <= study.completed_at
        assert not Notification.objects.filter(user=radiologist, type='study_assigned').exists()

    def test_taken_study_disappears_for_others(self, client_for, radiologist, second_radiologist, make_study):
        study = make_study()
        client_for(radiologist).post(f'/api/studies/{study.id}/take/')

        response = client_for(second_radiologist).post(f'/api/studies/{study.id}/take/')

        assert response.status_code == 404

    def test_start_requires_assignment(self, client_for, radiologist, assigned_study):
        client = client_for(radiologist)
        assert client.post(f'/api/studies/{assigned_study.id}/complete/').status_code == 400
        assert client.post(f'/api/studies/{assigned_study.id}/start/').status_code == 200
        assert client.post(f'/api/studies/{assigned_study.id}/start/').status_code == 400

    def test_other_radiologists_study_denied(self, client_for, second_radiologist, assigned_study):
        assert client_for(second_radiologist).post(f'/api/studies/{assigned_study.id}/start/').status_code == 404

    def test_manager_cannot_take(self, client_for, manager, make_study):
        assert client_for(manager).post(f'/api/studies/{make_study().id}/take/').status_code == 403


class TestStudyMaintenance:
    def test_mark_stat(self, client_for, manager, assigned_study):
        response = client_for(manager).post(f'/api/studies/{assigned_study.id}/stat/')

        assert response.status_code == 200
        assigned_study.refresh_from_db()
        assert assigned_study.is_stat is True
        assert assigned_study.sla_due_date <= timezone.now() + timedelta(minutes=60)

    def test_priority_change_recomputes_due_date(self, client_for, manager, assigned_study):
        response = client_for(manager).patch(
            f'/api/studies/{assigned_study.id}/', {'priority': 'urgent'}, format='json'
        )

        assert response.status_code == 200
        assigned_study.refresh_from_db()
        assert assigned_study.sla_due_date - assigned_study.assigned_at == timedelta(minutes=240)

    def test_delete(self, client_for, admin, organization, dicom_content):
        instance = dicom.store_instance(organization, dicom_content())

        response = client_for(admin).delete(f'/api/studies/{instance.series.study_id}/')

        assert response.status_code == 200
        assert not Study.objects.exists()
        assert not dicom.dicom_storage().exists(instance.file_path)

    def test_delete_with_report(self, client_for, admin, assigned_study, make_report):
        make_report(assigned_study)
        response = client_for(admin).delete(f'/api/studies/{assigned_study.id}/')
        assert response.status_code == 400
        assert response.data['error'] == 'Cannot delete study with existing reports'

    def test_manager_cannot_delete(self, client_for, manager, make_study):
        assert client_for(manager).delete(f'/api/studies/{make_study().id}/').status_code == 403

    def test_stats(self, client_for, manager, assigned_study):
        response = client_for(manager).get(f'/api/studies/{assigned_study.id}/stats/')

        assert response.status_code == 200
        stats = response.data['stats']
        assert stats['sla_breached'] is False
        assert 'time_to_assignment' in stats['timings']
        assert stats['timings']['time_remaining'] > 0
        assert 'reading_time' not in stats['timings']
