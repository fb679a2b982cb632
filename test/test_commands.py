import json
from io import StringIO

import pytest
from django.contrib.auth.models import User
from django.core.management import CommandError, call_command
from django.test import Client

from workflow.models import Instance, Organization, Study, UserProfile


def run(*args, **kwargs):
    out = StringIO()
    call_command(*args, stdout=out, no_color=True, **kwargs)
    return out.getvalue()


class TestSeedDemo:
    def test_creates_demo_organization(self, db):
        output = run('seed_demo')

        organization = Organization.objects.get(code='TEST_ORG')
        admin = User.objects.get(email='admin@radiologyplatform.com')
        assert admin.check_password('password123')
        assert admin.profile.role == UserProfile.ROLE_ADMIN
        assert User.objects.get(email='test@radiologyplatform.com').profile.role == UserProfile.ROLE_RADIOLOGIST
        study = Study.objects.get(organization=organization)
        assert study.patient_name == 'Test^Patient'
        assert Instance.objects.count() == 1
        assert 'Imported sample study' in output

    def test_is_idempotent(self, db):
        run('seed_demo')
        output = run('seed_demo', password='changed456')

        assert Organization.objects.filter(code='TEST_ORG').count() == 1
        assert User.objects.filter(email__endswith='@radiologyplatform.com').count() == 2
        assert Instance.objects.count() == 1
        assert 'Found organization TEST_ORG' in output
        assert User.objects.get(email='admin@radiologyplatform.com').check_password('password123')

    def test_skip_study(self, db):
        run('seed_demo', skip_study=True)
        assert not Study.objects.exists()


@pytest.mark.django_db(transaction=True)
class TestRunJob:
    def test_prints_result(self):
        output = run('runjob', 'notification_cleanup')
        assert json.loads(output) == {'deleted': 0}

    def test_unknown_job(self):
        with pytest.raises(CommandError):
            run('runjob', 'defragment')


def test_health():
    response = Client().get('/health/')
    assert response.status_code == 200
    assert response.json()['status'] == 'healthy'


def test_api_info():
    response = Client().get('/api-info/')
    assert response.json()['endpoints']['websocket'] == '/ws/notifications/'
