import numpy as np
from django.contrib.auth.models import User
from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.uid import CTImageStorage, ExplicitVRLittleEndian, generate_uid

from workflow.dicom import dataset_to_bytes, store_instance
from workflow.models import Instance, Organization, UserProfile

DEMO_STUDY_UID = '1.3.6.1.4.1.44316.6.102.1.20250704114423696.61158672119535771932'
DEMO_SERIES_UID = '1.3.6.1.4.1.44316.6.102.2.20250704114423696.61158672119535771932'
DEMO_SOP_UID = '1.3.6.1.4.1.44316.6.102.3.20250704114423696.61158672119535771932.1'


def build_demo_dataset():
    file_meta = FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = CTImageStorage
    file_meta.MediaStorageSOPInstanceUID = DEMO_SOP_UID
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian
    file_meta.ImplementationClassUID = generate_uid()

    ds = Dataset()
    ds.file_meta = file_meta
    ds.preamble = b"\0" * 128
    ds.SOPClassUID = CTImageStorage
    ds.SOPInstanceUID = DEMO_SOP_UID
    ds.StudyInstanceUID = DEMO_STUDY_UID
    ds.SeriesInstanceUID = DEMO_SERIES_UID
    ds.PatientName = 'Test^Patient'
    ds.PatientID = 'TEST001'
    ds.PatientBirthDate = '19900101'
    ds.PatientSex = 'M'
    ds.PatientAge = '034Y'
    ds.StudyDate = '20250704'
    ds.StudyTime = '114423'
    ds.StudyDescription = 'Test Study from DICOM Library'
    ds.AccessionNumber = 'ACC001'
    ds.ReferringPhysicianName = 'Test^Physician'
    ds.InstitutionName = 'Test Hospital'
    ds.Modality = 'CT'
    ds.SeriesNumber = 1
    ds.SeriesDescription = 'Test CT Series'
    ds.InstanceNumber = 1

    ramp = np.tile(np.arange(64, dtype=np.uint16) * 64, (64, 1))
    ds.Rows, ds.Columns = ramp.shape
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = 'MONOCHROME2'
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 0
    ds.PixelSpacing = [0.7, 0.7]
    ds.SliceThickness = 5
    ds.PixelData = ramp.tobytes()
    return ds


class Command(BaseCommand):
    help = "Create the TEST_ORG organization with an admin, a radiologist and one sample study."

    def add_arguments(self, parser):
        parser.add_argument('--password', default='password123')
        parser.add_argument('--skip-study', action='store_true')

    def _user(self, organization, email, first_name, last_name, role, password):
        user, created = User.objects.get_or_create(
            username=email,
            defaults={'email': email, 'first_name': first_name, 'last_name': last_name},
        )
        if created:
            user.set_password(password)
            user.save()
            UserProfile.objects.create(
                user=user,
                organization=organization,
                role=role,
                is_verified=True,
                password_changed_at=timezone.now(),
            )
        self.stdout.write(f"{'Created' if created else 'Found'} {role} {email}")
        return user

    @transaction.atomic
    def handle(self, *args, **options):
        organization, created = Organization.objects.get_or_create(
            code='TEST_ORG',
            defaults={
                'name': 'Test Radiology Organization',
                'contact_email': 'test@radiologyplatform.com',
                'contact_phone': '+1-555-0123',
                'address': {
                    'street': '123 Medical Center Dr',
                    'city': 'Test City',
                    'state': 'TC',
                    'country': 'US',
                    'postal_code': '12345',
                },
            },
        )
        self.stdout.write(f"{'Created' if created else 'Found'} organization {organization.code}")

        password = options['password']
        admin = self._user(organization, 'admin@radiologyplatform.com', 'Test', 'Admin', UserProfile.ROLE_ADMIN, password)
        self._user(organization, 'test@radiologyplatform.com', 'Test', 'Radiologist', UserProfile.ROLE_RADIOLOGIST, password)

        if options['skip_study'] or Instance.objects.filter(sop_instance_uid=DEMO_SOP_UID).exists():
            return
        instance = store_instance(organization, dataset_to_bytes(build_demo_dataset()), uploaded_by=admin)
        self.stdout.write(self.style.SUCCESS(f"Imported sample study {instance.series.study.study_instance_uid}"))
