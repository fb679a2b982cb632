import os

import pytest
from django.core.files.uploadedfile import SimpleUploadedFile
from pydicom import config as pydicom_config
from pydicom.uid import generate_uid

from workflow import dicom
from workflow.exceptions import Conflict, DicomValidationError
from workflow.models import Instance, Series, Study

PNG_MAGIC = b'\x89PNG\r\n\x1a\n'


class TestParsing:
    def test_extract_metadata(self, dicom_content):
        ds, metadata = dicom.parse_dicom(dicom_content(patient_name='Roe^Richard', modality='MR'))

        assert metadata['patient_name'] == 'Roe^Richard'
        assert metadata['modality'] == 'MR'
        assert metadata['rows'] == 32
        assert metadata['pixel_spacing'] == [0.5, 0.5]
        assert metadata['window_center'] == 40.0
        assert metadata['transfer_syntax_uid'] == '1.2.840.10008.1.2.1'
        assert dicom.parse_dicom_date(metadata['study_date']).isoformat() == '2024-03-01'

    def test_missing_required_tags(self, dicom_dataset):
        ds = dicom_dataset()
        del ds.SeriesInstanceUID
        with pytest.raises(DicomValidationError) as excinfo:
            dicom.validate_dicom(ds)
        assert 'SeriesInstanceUID' in str(excinfo.value.detail)

    @pytest.mark.parametrize('tag, value', [
        ('SeriesInstanceUID', '../../etc'),
        ('StudyInstanceUID', '1.2.abc'),
        ('SOPInstanceUID', '1.' + '2' * 200),
    ])
    def test_malformed_uid(self, dicom_dataset, tag, value):
        ds = dicom_dataset()
        with pydicom_config.disable_value_validation():
            setattr(ds, tag, value)
        with pytest.raises(DicomValidationError) as excinfo:
            dicom.validate_dicom(ds)
        assert tag in str(excinfo.value.detail)

    def test_garbage_is_rejected(self):
        with pytest.raises(DicomValidationError):
            ds, _ = dicom.parse_dicom(b'definitely not a dicom file')
            dicom.validate_dicom(ds)

    def test_anonymize(self, dicom_dataset):
        ds = dicom_dataset(patient_name='Doe^Jane', patient_id='MRN-77')

        original = dicom.anonymize_dataset(ds)

        assert str(ds.PatientName) == 'ANONYMOUS'
        assert ds.PatientID == 'ANON123'
        assert ds.InstitutionName == ''
        assert ds.PatientIdentityRemoved == 'YES'
        assert original['PatientName'] == 'Doe^Jane'
        assert original['PatientID'] == 'MRN-77'

    def test_thumbnail(self, dicom_content):
        png = dicom.generate_thumbnail(dicom.read_dataset(dicom_content()), size=(16, 16))
        assert png.startswith(PNG_MAGIC)


class TestStoreInstance:
    def test_creates_study_series_instance(self, organization, settings, dicom_content):
        study_uid, series_uid = generate_uid(), generate_uid()

        first = dicom.store_instance(organization, dicom_content(study_uid=study_uid, series_uid=series_uid))
        dicom.store_instance(organization, dicom_content(study_uid=study_uid, series_uid=series_uid, InstanceNumber=2))

        study = Study.objects.get(study_instance_uid=study_uid)
        assert study.organization == organization
        assert study.patient_name == 'Doe^Jane'
        assert study.status == Study.STATUS_UNREAD
        assert study.number_of_series == 1
        assert study.number_of_instances == 2
        assert study.total_size_bytes == sum(Instance.objects.values_list('file_size', flat=True))
        assert Series.objects.get(series_instance_uid=series_uid).number_of_instances == 2

        expected = os.path.join(settings.DICOM_STORAGE_PATH, str(organization.id), study_uid, series_uid)
        assert os.path.isfile(os.path.join(expected, f"{first.sop_instance_uid}.dcm"))
        assert len(first.checksum) == 64

    def test_duplicate_instance(self, organization, dicom_content):
        content = dicom_content()
        dicom.store_instance(organization, content)
        with pytest.raises(Conflict):
            dicom.store_instance(organization, content)

    def test_study_owned_by_another_organization(self, organization, other_organization, dicom_content):
        study_uid = generate_uid()
        dicom.store_instance(organization, dicom_content(study_uid=study_uid))
        with pytest.raises(Conflict) as excinfo:
            dicom.store_instance(other_organization, dicom_content(study_uid=study_uid))
        assert str(excinfo.value.detail) == 'Study already registered to another organization'

    def test_target_study_mismatch(self, organization, make_study, dicom_content):
        study = make_study()
        with pytest.raises(DicomValidationError):
            dicom.store_instance(organization, dicom_content(), study=study)

    def test_anonymized_upload(self, organization, dicom_content):
        instance = dicom.store_instance(organization, dicom_content(patient_name='Doe^Jane'), anonymize=True)

        study = instance.series.study
        assert study.patient_name == 'ANONYMOUS'
        assert study.is_anonymized is True
        assert study.anonymization_map['PatientName'] == 'Doe^Jane'
        with open(dicom.instance_file_path(instance), 'rb') as fh:
            ds = dicom.read_dataset(fh.read())
        assert str(ds.PatientName) == 'ANONYMOUS'

    def test_study_statistics(self, organization, dicom_content):
        dicom.store_instance(organization, dicom_content(modality='CT'))
        dicom.store_instance(organization, dicom_content(modality='MR'))

        stats = dicom.study_statistics(organization)

        assert stats['total_studies'] == 2
        assert stats['total_instances'] == 2
        assert stats['by_modality'] == {'CT': 1, 'MR': 1}
        assert stats['by_status'] == {'unread': 2}


class TestUploadEndpoint:
    def test_technician_upload(self, client_for, technician, dicom_file):
        bad = SimpleUploadedFile('notes.txt', b'hello', content_type='text/plain')

        response = client_for(technician).post(
            '/api/dicom/upload/', {'files': [dicom_file('a.dcm'), bad]}, format='multipart'
        )

        assert response.status_code == 201
        assert len(response.data['files']) == 1
        assert response.data['errors'][0]['filename'] == 'notes.txt'
        assert len(response.data['studies']) == 1
        study = Study.objects.get()
        assert study.created_by == technician

    def test_malformed_uid_is_a_per_file_error(self, client_for, technician, dicom_file):
        with pydicom_config.disable_value_validation():
            bad = dicom_file('bad.dcm', series_uid='../../etc')

        response = client_for(technician).post(
            '/api/dicom/upload/', {'files': [bad, dicom_file('good.dcm')]}, format='multipart'
        )

        assert response.status_code == 201
        assert len(response.data['files']) == 1
        assert response.data['errors'][0]['filename'] == 'bad.dcm'
        assert 'SeriesInstanceUID' in response.data['errors'][0]['error']
        assert Instance.objects.count() == 1

    def test_all_files_rejected(self, client_for, technician):
        bad = SimpleUploadedFile('notes.txt', b'hello', content_type='text/plain')
        response = client_for(technician).post('/api/dicom/upload/', {'files': [bad]}, format='multipart')
        assert response.status_code == 400
        assert response.data['success'] is False

    def test_no_files(self, client_for, technician):
        response = client_for(technician).post('/api/dicom/upload/', {}, format='multipart')
        assert response.status_code == 400
        assert response.data['error'] == 'No files uploaded'

    def test_viewer_cannot_upload(self, client_for, viewer, dicom_file):
        response = client_for(viewer).post('/api/dicom/upload/', {'files': [dicom_file()]}, format='multipart')
        assert response.status_code == 403

    def test_upload_into_existing_study(self, client_for, manager, make_study, dicom_file):
        study = make_study()
        client = client_for(manager)

        ok = client.post(
            f'/api/studies/{study.id}/upload/',
            {'files': [dicom_file(study_uid=study.study_instance_uid)], 'anonymize': 'true'},
            format='multipart',
        )
        mismatch = client.post(f'/api/studies/{study.id}/upload/', {'files': [dicom_file()]}, format='multipart')

        assert ok.status_code == 201
        assert ok.data['study']['number_of_instances'] == 1
        study.refresh_from_db()
        assert study.is_anonymized is True
        assert mismatch.status_code == 400
        assert 'StudyInstanceUID mismatch' in mismatch.data['errors'][0]['error']


class TestInstanceEndpoints:
    @pytest.fixture
    def instance(self, organization, dicom_content):
        return dicom.store_instance(organization, dicom_content())

    def test_file_download(self, client_for, manager, instance):
        response = client_for(manager).get(f'/api/dicom/instances/{instance.id}/file/')

        assert response.status_code == 200
        assert response['Content-Type'] == 'application/dicom'
        content = b''.join(response.streaming_content)
        assert content[128:132] == b'DICM'

    def test_thumbnail(self, client_for, manager, instance):
        response = client_for(manager).get(f'/api/dicom/instances/{instance.id}/thumbnail/', {'size': 64})

        assert response.status_code == 200
        assert response['Content-Type'] == 'image/png'
        assert response.content.startswith(PNG_MAGIC)

    @pytest.mark.parametrize('size', [0, -5, 'big'])
    def test_thumbnail_bad_size(self, client_for, manager, instance, size):
        response = client_for(manager).get(f'/api/dicom/instances/{instance.id}/thumbnail/', {'size': size})

        assert response.status_code == 400
        assert response.data['success'] is False

    def test_unassigned_radiologist_denied(self, client_for, radiologist, instance):
        Study.objects.filter(id=instance.series.study_id).update(status=Study.STATUS_ASSIGNED)
        response = client_for(radiologist).get(f'/api/dicom/instances/{instance.id}/file/')
        assert response.status_code == 403

    def test_other_organization(self, client_for, make_user, other_organization, instance):
        outsider = make_user(org=other_organization)
        assert client_for(outsider).get(f'/api/dicom/instances/{instance.id}/file/').status_code == 404
