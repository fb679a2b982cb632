from datetime import timedelta
from io import BytesIO

import numpy as np
import pytest
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.contrib.auth.models import User
from django.core.cache import cache
from django.core.files.uploadedfile import SimpleUploadedFile
from django.utils import timezone
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.uid import CTImageStorage, ExplicitVRLittleEndian, generate_uid
from rest_framework.test import APIClient

from workflow.authentication import issue_tokens
from workflow.models import Organization, Report, Study, UserProfile


@pytest.fixture(autouse=True)
def _test_settings(settings, tmp_path):
    settings.DICOM_STORAGE_PATH = str(tmp_path / 'dicom')
    settings.PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']
    settings.EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
    settings.CHANNEL_LAYERS = {'default': {'BACKEND': 'channels.layers.InMemoryChannelLayer'}}
    settings.FRONTEND_URL = 'http://frontend.test'
    cache.clear()
    yield
    cache.clear()
    async_to_sync(get_channel_layer().flush)()


@pytest.fixture
def organization(db):
    return Organization.objects.create(name='General Hospital', code='GEN', contact_email='ops@general.test')


@pytest.fixture
def other_organization(db):
    return Organization.objects.create(name='Other Clinic', code='OTHER')


@pytest.fixture
def make_user(db, organization):
    counter = {'n': 0}

    def _make(role=UserProfile.ROLE_VIEWER, org=None, email=None, password='password123', verified=True, **profile):
        counter['n'] += 1
        email = email or f"{role}{counter['n']}@example.test"
        user = User.objects.create_user(
            username=email,
            email=email,
            password=password,
            first_name=role.title(),
            last_name=f"User{counter['n']}",
        )
        UserProfile.objects.create(
            user=user,
            organization=org or organization,
            role=role,
            is_verified=verified,
            **profile,
        )
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(UserProfile.ROLE_ADMIN)


@pytest.fixture
def manager(make_user):
    return make_user(UserProfile.ROLE_MANAGER)


@pytest.fixture
def radiologist(make_user):
    return make_user(UserProfile.ROLE_RADIOLOGIST)


@pytest.fixture
def second_radiologist(make_user):
    return make_user(UserProfile.ROLE_RADIOLOGIST)


@pytest.fixture
def technician(make_user):
    return make_user(UserProfile.ROLE_TECHNICIAN)


@pytest.fixture
def viewer(make_user):
    return make_user(UserProfile.ROLE_VIEWER)


@pytest.fixture
def client_for():
    def _client(user, issued_at=None):
        client = APIClient()
        if user is not None:
            tokens = issue_tokens(user, issued_at=issued_at)
            client.credentials(HTTP_AUTHORIZATION=f"Bearer {tokens['token']}")
        return client

    return _client


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def make_study(db, organization):
    counter = {'n': 0}

    def _make(org=None, **fields):
        counter['n'] += 1
        defaults = {
            'study_instance_uid': generate_uid(),
            'patient_name': f"Patient^{counter['n']}",
            'patient_id': f"P{counter['n']:04d}",
            'modality': 'CT',
        }
        defaults.update(fields)
        return Study.objects.create(organization=org or organization, **defaults)

    return _make


@pytest.fixture
def assigned_study(make_study, radiologist):
    now = timezone.now()
    return make_study(
        status=Study.STATUS_ASSIGNED,
        assigned_radiologist=radiologist,
        assigned_at=now,
        sla_due_date=now + timedelta(hours=24),
    )


@pytest.fixture
def make_report(db):
    def _make(study, radiologist=None, **fields):
        defaults = {'findings': 'No acute findings.', 'impression': 'Normal study.'}
        defaults.update(fields)
        return Report.objects.create(study=study, radiologist=radiologist or study.assigned_radiologist, **defaults)

    return _make


def build_dataset(study_uid=None, series_uid=None, sop_uid=None, patient_name='Doe^Jane',
                  patient_id='PID001', modality='CT', **attrs):
    sop_uid = sop_uid or generate_uid()
    file_meta = FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = CTImageStorage
    file_meta.MediaStorageSOPInstanceUID = sop_uid
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian
    file_meta.ImplementationClassUID = generate_uid()

    ds = Dataset()
    ds.file_meta = file_meta
    ds.preamble = b"\0" * 128
    ds.SOPClassUID = CTImageStorage
    ds.SOPInstanceUID = sop_uid
    ds.StudyInstanceUID = study_uid or generate_uid()
    ds.SeriesInstanceUID = series_uid or generate_uid()
    ds.PatientName = patient_name
    ds.PatientID = patient_id
    ds.PatientBirthDate = '19800215'
    ds.PatientSex = 'F'
    ds.StudyDate = '20240301'
    ds.StudyTime = '101500'
    ds.StudyDescription = 'CT CHEST W/O'
    ds.AccessionNumber = 'ACC-100'
    ds.ReferringPhysicianName = 'House^Greg'
    ds.InstitutionName = 'General Hospital'
    ds.Modality = modality
    ds.SeriesNumber = 1
    ds.SeriesDescription = 'Axial'
    ds.InstanceNumber = 1

    pixels = np.tile(np.arange(32, dtype=np.uint16) * 100, (32, 1))
    ds.Rows, ds.Columns = pixels.shape
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = 'MONOCHROME2'
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 0
    ds.PixelSpacing = [0.5, 0.5]
    ds.SliceThickness = 2.5
    ds.WindowCenter = 40
    ds.WindowWidth = 400
    ds.PixelData = pixels.tobytes()
    for key, value in attrs.items():
        setattr(ds, key, value)
    return ds


def dicom_bytes(**kwargs):
    buffer = BytesIO()
    build_dataset(**kwargs).save_as(buffer, enforce_file_format=True)
    return buffer.getvalue()


@pytest.fixture
def dicom_dataset():
    return build_dataset


@pytest.fixture
def dicom_content():
    return dicom_bytes


@pytest.fixture
def dicom_file():
    def _make(name='image.dcm', **kwargs):
        return SimpleUploadedFile(name, dicom_bytes(**kwargs), content_type='application/dicom')

    return _make
