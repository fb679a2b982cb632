from django.contrib.auth.models import User
from django.core import mail

from workflow.models import AuditLog, Report, Study, UserProfile


def emails_of(response):
    return {item['email'] for item in response.data['results']}


class TestUserList:
    def test_admin_sees_everyone_in_organization(self, client_for, admin, manager, radiologist, make_user, other_organization):
        outsider = make_user(UserProfile.ROLE_RADIOLOGIST, org=other_organization)

        response = client_for(admin).get('/api/users/')

        assert response.status_code == 200
        assert emails_of(response) == {admin.email, manager.email, radiologist.email}
        assert outsider.email not in emails_of(response)
        assert response.data['pagination']['total'] == 3

    def test_manager_does_not_see_admins(self, client_for, admin, manager, radiologist):
        response = client_for(manager).get('/api/users/')
        assert emails_of(response) == {manager.email, radiologist.email}

    def test_filters(self, client_for, admin, radiologist, technician):
        client = client_for(admin)
        assert emails_of(client.get('/api/users/', {'role': 'radiologist'})) == {radiologist.email}

        technician.is_active = False
        technician.save()
        assert emails_of(client.get('/api/users/', {'status': 'inactive'})) == {technician.email}
        assert emails_of(client.get('/api/users/', {'search': radiologist.last_name})) == {radiologist.email}

    def test_radiologist_cannot_list(self, client_for, radiologist):
        assert client_for(radiologist).get('/api/users/').status_code == 403


class TestUserRetrieve:
    def test_self(self, client_for, viewer):
        response = client_for(viewer).get(f'/api/users/{viewer.id}/')
        assert response.status_code == 200
        assert response.data['user']['email'] == viewer.email

    def test_viewer_cannot_read_colleague(self, client_for, viewer, radiologist):
        assert client_for(viewer).get(f'/api/users/{radiologist.id}/').status_code == 403

    def test_other_organization_is_invisible(self, client_for, admin, make_user, other_organization):
        outsider = make_user(UserProfile.ROLE_VIEWER, org=other_organization)
        assert client_for(admin).get(f'/api/users/{outsider.id}/').status_code == 404


class TestUserCreate:
    def test_admin_creates_verified_member(self, client_for, admin):
        response = client_for(admin).post('/api/users/', {
            'email': 'Dr.New@Example.test',
            'first_name': 'Dana',
            'last_name': 'New',
            'role': 'radiologist',
            'specialization': 'Neuroradiology',
        }, format='json')

        assert response.status_code == 201
        user = User.objects.get(email='dr.new@example.test')
        assert user.profile.organization_id == admin.profile.organization_id
        assert user.profile.is_verified is True
        assert user.profile.specialization == 'Neuroradiology'
        assert mail.outbox[-1].subject == 'Welcome to the Radiology Platform'

    def test_duplicate(self, client_for, admin, radiologist):
        response = client_for(admin).post('/api/users/', {
            'email': radiologist.email, 'first_name': 'A', 'last_name': 'B', 'role': 'viewer',
        }, format='json')
        assert response.status_code == 409

    def test_manager_cannot_create(self, client_for, manager):
        response = client_for(manager).post('/api/users/', {
            'email': 'x@example.test', 'first_name': 'A', 'last_name': 'B', 'role': 'viewer',
        }, format='json')
        assert response.status_code == 403


class TestUserUpdate:
    def test_admin_changes_role(self, client_for, admin, viewer):
        response = client_for(admin).patch(f'/api/users/{viewer.id}/', {'role': 'technician'}, format='json')

        assert response.status_code == 200
        viewer.profile.refresh_from_db()
        assert viewer.profile.role == 'technician'

    def test_manager_cannot_change_role(self, client_for, manager, viewer):
        response = client_for(manager).patch(f'/api/users/{viewer.id}/', {'role': 'admin'}, format='json')
        assert response.status_code == 403

    def test_manager_edits_profile_fields(self, client_for, manager, technician):
        response = client_for(manager).patch(f'/api/users/{technician.id}/', {'phone': '555-0100'}, format='json')
        assert response.status_code == 200
        technician.profile.refresh_from_db()
        assert technician.profile.phone == '555-0100'

    def test_cannot_deactivate_self(self, client_for, admin):
        response = client_for(admin).patch(f'/api/users/{admin.id}/', {'is_active': False}, format='json')
        assert response.status_code == 400
        assert response.data['error'] == 'You cannot deactivate your own account'

    def test_email_in_use(self, client_for, admin, viewer, radiologist):
        response = client_for(admin).patch(f'/api/users/{viewer.id}/', {'email': radiologist.email}, format='json')
        assert response.status_code == 409
        assert response.data['error'] == 'Email already in use'

    def test_email_change_requires_new_verification(self, client_for, viewer):
        response = client_for(viewer).put(f'/api/users/{viewer.id}/', {'email': 'moved@example.test'}, format='json')

        assert response.status_code == 200
        viewer.refresh_from_db()
        assert viewer.username == 'moved@example.test'
        assert viewer.profile.is_verified is False
        assert mail.outbox[-1].to == ['moved@example.test']


class TestUserDelete:
    def test_soft_delete(self, client_for, admin, technician):
        response = client_for(admin).delete(f'/api/users/{technician.id}/')

        assert response.status_code == 200
        technician.refresh_from_db()
        assert technician.is_active is False
        assert technician.profile.deleted_at is not None
        assert User.objects.filter(id=technician.id).exists()
        assert technician.email not in emails_of(client_for(admin).get('/api/users/'))

    def test_cannot_delete_self(self, client_for, admin):
        assert client_for(admin).delete(f'/api/users/{admin.id}/').status_code == 400


class TestUserStatsAndActivity:
    def test_radiologist_stats(self, client_for, admin, radiologist, assigned_study, make_report):
        make_report(assigned_study, status=Report.STATUS_FINALIZED)
        Study.objects.filter(id=assigned_study.id).update(status=Study.STATUS_REPORTED)

        response = client_for(admin).get(f'/api/users/{radiologist.id}/stats/')

        assert response.status_code == 200
        stats = response.data['stats']
        assert stats['study_stats']['total_studies'] == 1
        assert stats['study_stats']['completed_studies'] == 1
        assert stats['report_stats']['total_reports'] == 1
        assert stats['report_stats']['finalized_reports'] == 1

    def test_activity(self, client_for, admin, viewer):
        AuditLog.objects.create(user=viewer, organization=viewer.profile.organization, action='login')

        response = client_for(admin).get(f'/api/users/{viewer.id}/activity/')

        assert response.status_code == 200
        assert [row['action'] for row in response.data['results']] == ['login']
