"""DICOM ingestion: parse uploads with pydicom, store them per
organization/study/series and keep the Study/Series/Instance rows in step."""
import datetime
import hashlib
import logging
import os
import re
import tempfile
from io import BytesIO

import numpy as np
import pydicom
from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import FileSystemStorage
from django.db import transaction
from django.db.models import Count, Sum
from PIL import Image
from pydicom.filebase import DicomBytesIO
from pydicom.multival import MultiValue
from pydicom.uid import ExplicitVRLittleEndian

from .exceptions import AppError, Conflict, DicomValidationError
from .models import Instance, Series, Study

logger = logging.getLogger(__name__)

REQUIRED_TAGS = ('StudyInstanceUID', 'SeriesInstanceUID', 'SOPInstanceUID', 'SOPClassUID')
UID_TAGS = ('StudyInstanceUID', 'SeriesInstanceUID', 'SOPInstanceUID')
UID_PATTERN = re.compile(r'^[0-9]+(\.[0-9]+)*$')
MAX_UID_LENGTH = 128

COMPRESSED_SYNTAXES = {
    "1.2.840.10008.1.2.4.50",
    "1.2.840.10008.1.2.4.51",
    "1.2.840.10008.1.2.4.57",
    "1.2.840.10008.1.2.4.70",
    "1.2.840.10008.1.2.4.80",
    "1.2.840.10008.1.2.4.81",
    "1.2.840.10008.1.2.4.90",
    "1.2.840.10008.1.2.4.91",
    "1.2.840.10008.1.2.5",
}

ANONYMIZED_VALUES = {
    'PatientName': 'ANONYMOUS',
    'PatientID': 'ANON123',
    'PatientBirthDate': '',
    'PatientAddress': '',
    'PatientTelephoneNumbers': '',
    'OtherPatientIDs': '',
    'OtherPatientNames': '',
    'ReferringPhysicianName': '',
    'InstitutionName': '',
    'InstitutionAddress': '',
}


def dicom_storage():
    return FileSystemStorage(location=settings.DICOM_STORAGE_PATH)


def safe_get_attr(ds, attr, default=""):
    try:
        value = getattr(ds, attr, None)
        if value is None:
            return default
        if isinstance(value, bytes):
            return value.decode('latin-1', errors='replace').strip()
        if isinstance(value, MultiValue):
            return [str(item) for item in value]
        return str(value).strip()
    except (UnicodeDecodeError, ValueError, TypeError) as e:
        logger.warning(f"Error extracting {attr}: {str(e)}")
        return default


def _float_list(ds, attr):
    value = getattr(ds, attr, None)
    if not value:
        return []
    try:
        return [float(x) for x in value]
    except (TypeError, ValueError):
        return []


def _optional_float(ds, attr):
    value = getattr(ds, attr, None)
    if value in (None, ''):
        return None
    if isinstance(value, MultiValue):
        value = value[0] if value else None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _optional_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_dicom_date(value):
    value = (value or '').strip()
    if len(value) < 8:
        return None
    try:
        return datetime.datetime.strptime(value[:8], '%Y%m%d').date()
    except ValueError:
        return None


def read_dataset(content):
    try:
        return pydicom.dcmread(DicomBytesIO(content), force=True)
    except Exception as e:
        logger.error(f"Error reading DICOM content: {str(e)}")
        raise DicomValidationError(f"Invalid DICOM file: {str(e)}")


def extract_metadata(ds):
    transfer_syntax = ''
    if hasattr(ds, 'file_meta') and 'TransferSyntaxUID' in ds.file_meta:
        transfer_syntax = str(ds.file_meta.TransferSyntaxUID)
    return {
        'patient_name': safe_get_attr(ds, 'PatientName'),
        'patient_id': safe_get_attr(ds, 'PatientID'),
        'patient_birth_date': safe_get_attr(ds, 'PatientBirthDate'),
        'patient_sex': safe_get_attr(ds, 'PatientSex'),
        'patient_age': safe_get_attr(ds, 'PatientAge'),
        'study_instance_uid': safe_get_attr(ds, 'StudyInstanceUID'),
        'study_date': safe_get_attr(ds, 'StudyDate'),
        'study_time': safe_get_attr(ds, 'StudyTime'),
        'study_description': safe_get_attr(ds, 'StudyDescription'),
        'accession_number': safe_get_attr(ds, 'AccessionNumber'),
        'referring_physician': safe_get_attr(ds, 'ReferringPhysicianName'),
        'institution_name': safe_get_attr(ds, 'InstitutionName'),
        'body_part': safe_get_attr(ds, 'BodyPartExamined'),
        'series_instance_uid': safe_get_attr(ds, 'SeriesInstanceUID'),
        'series_number': safe_get_attr(ds, 'SeriesNumber'),
        'series_description': safe_get_attr(ds, 'SeriesDescription'),
        'protocol_name': safe_get_attr(ds, 'ProtocolName'),
        'modality': safe_get_attr(ds, 'Modality'),
        'sop_instance_uid': safe_get_attr(ds, 'SOPInstanceUID'),
        'sop_class_uid': safe_get_attr(ds, 'SOPClassUID'),
        'instance_number': safe_get_attr(ds, 'InstanceNumber'),
        'transfer_syntax_uid': transfer_syntax,
        'rows': _optional_int(getattr(ds, 'Rows', None)),
        'columns': _optional_int(getattr(ds, 'Columns', None)),
        'pixel_spacing': _float_list(ds, 'PixelSpacing'),
        'image_position': _float_list(ds, 'ImagePositionPatient'),
        'image_orientation': _float_list(ds, 'ImageOrientationPatient'),
        'slice_thickness': _optional_float(ds, 'SliceThickness'),
        'window_center': _optional_float(ds, 'WindowCenter'),
        'window_width': _optional_float(ds, 'WindowWidth'),
    }


def parse_dicom(content):
    """Read raw bytes and return ``(dataset, metadata)``."""
    ds = read_dataset(content)
    return ds, extract_metadata(ds)


def validate_dicom(ds):
    missing = [tag for tag in REQUIRED_TAGS if not safe_get_attr(ds, tag)]
    if missing:
        raise DicomValidationError(f"Missing required DICOM tags: {', '.join(missing)}")
    for tag in UID_TAGS:
        value = safe_get_attr(ds, tag)
        if len(value) > MAX_UID_LENGTH or not UID_PATTERN.match(value):
            raise DicomValidationError(f"Invalid {tag}: {value[:MAX_UID_LENGTH]!r}")
    return True


def anonymize_dataset(ds):
    """Blank out patient identifiers in place and return the original values."""
    original = {}
    for attr, replacement in ANONYMIZED_VALUES.items():
        if attr in ds:
            original[attr] = safe_get_attr(ds, attr)
            setattr(ds, attr, replacement)
    ds.remove_private_tags()
    ds.PatientIdentityRemoved = 'YES'
    return original


def dataset_to_bytes(ds):
    buffer = BytesIO()
    ds.save_as(buffer, enforce_file_format=True)
    return buffer.getvalue()


def _storage_name(organization, metadata):
    return os.path.join(
        str(organization.id),
        metadata['study_instance_uid'],
        metadata['series_instance_uid'],
        f"{metadata['sop_instance_uid']}.dcm",
    )


def _study_defaults(organization, metadata, uploaded_by):
    return {
        'organization': organization,
        'patient_id': metadata['patient_id'][:64],
        'patient_name': metadata['patient_name'][:200],
        'patient_birth_date': parse_dicom_date(metadata['patient_birth_date']),
        'patient_sex': metadata['patient_sex'][:10],
        'patient_age': metadata['patient_age'][:10],
        'study_date': parse_dicom_date(metadata['study_date']),
        'study_time': metadata['study_time'][:20],
        'study_description': metadata['study_description'][:255],
        'accession_number': metadata['accession_number'][:64],
        'referring_physician': metadata['referring_physician'][:200],
        'institution_name': metadata['institution_name'][:200],
        'body_part': metadata['body_part'][:64],
        'modality': metadata['modality'][:16],
        'storage_path': os.path.join(str(organization.id), metadata['study_instance_uid']),
        'created_by': uploaded_by,
    }


def store_instance(organization, content, study=None, uploaded_by=None, anonymize=False):
    """Persist one uploaded DICOM file and return its ``Instance``.

    The file lands at ``<org>/<study uid>/<series uid>/<sop uid>.dcm`` under
    ``DICOM_STORAGE_PATH``; the Study and Series rows are created on first
    sight and their counters refreshed afterwards.
    """
    ds, metadata = parse_dicom(content)
    validate_dicom(ds)

    if study is not None and study.study_instance_uid != metadata['study_instance_uid']:
        raise DicomValidationError("File belongs to a different study (StudyInstanceUID mismatch)")

    existing = Study.objects.filter(study_instance_uid=metadata['study_instance_uid']).first()
    if existing is not None and existing.organization_id != organization.id:
        raise Conflict("Study already registered to another organization")

    if Instance.objects.filter(sop_instance_uid=metadata['sop_instance_uid']).exists():
        raise Conflict(f"Instance {metadata['sop_instance_uid']} already stored")

    anonymization_map = {}
    if anonymize:
        anonymization_map = anonymize_dataset(ds)
        content = dataset_to_bytes(ds)
        metadata = extract_metadata(ds)

    checksum = hashlib.sha256(content).hexdigest()
    storage = dicom_storage()
    try:
        file_path = storage.save(_storage_name(organization, metadata), ContentFile(content))
    except OSError as e:
        logger.error(f"Error saving file: {str(e)}")
        raise AppError(f"File save error: {str(e)}", status_code=500)
    logger.info(f"DICOM file saved to: {storage.path(file_path)}")

    try:
        with transaction.atomic():
            study_obj, created = Study.objects.get_or_create(
                study_instance_uid=metadata['study_instance_uid'],
                defaults=_study_defaults(organization, metadata, uploaded_by),
            )
            if created:
                study_obj.dicom_metadata = {
                    key: metadata[key] for key in ('transfer_syntax_uid', 'sop_class_uid', 'institution_name')
                }
            if anonymize:
                study_obj.is_anonymized = True
                study_obj.anonymization_map = {**study_obj.anonymization_map, **anonymization_map}
            if created or anonymize:
                study_obj.save()

            series, _ = Series.objects.get_or_create(
                series_instance_uid=metadata['series_instance_uid'],
                defaults={
                    'study': study_obj,
                    'series_number': _optional_int(metadata['series_number']),
                    'series_description': metadata['series_description'][:255],
                    'modality': metadata['modality'][:16],
                    'body_part_examined': metadata['body_part'][:64],
                    'protocol_name': metadata['protocol_name'][:200],
                },
            )
            if series.study_id != study_obj.id:
                raise DicomValidationError("Series already belongs to a different study")

            instance = Instance.objects.create(
                series=series,
                sop_instance_uid=metadata['sop_instance_uid'],
                sop_class_uid=metadata['sop_class_uid'],
                instance_number=_optional_int(metadata['instance_number']),
                transfer_syntax_uid=metadata['transfer_syntax_uid'],
                rows=metadata['rows'],
                columns=metadata['columns'],
                pixel_spacing=metadata['pixel_spacing'],
                slice_thickness=metadata['slice_thickness'],
                image_position=metadata['image_position'],
                image_orientation=metadata['image_orientation'],
                window_center=metadata['window_center'],
                window_width=metadata['window_width'],
                file_path=file_path,
                file_size=len(content),
                checksum=checksum,
                metadata={
                    'patient_id': metadata['patient_id'],
                    'study_date': metadata['study_date'],
                    'modality': metadata['modality'],
                },
            )
            series.refresh_counts()
            study_obj.refresh_counts()
    except Exception:
        logger.error(f"Database error while storing {metadata['sop_instance_uid']}; removing {file_path}")
        storage.delete(file_path)
        raise

    logger.info(f"Stored instance {instance.sop_instance_uid} in study {study_obj.study_instance_uid}")
    return instance


def ingest_files(organization, uploaded_files, study=None, uploaded_by=None, anonymize=False):
    """Store several uploads, collecting per-file results instead of failing the batch."""
    stored = []
    errors = []
    for uploaded in uploaded_files:
        name = getattr(uploaded, 'name', 'upload')
        try:
            instance = store_instance(
                organization, uploaded.read(), study=study, uploaded_by=uploaded_by, anonymize=anonymize
            )
        except AppError as e:
            logger.warning(f"Rejected DICOM upload {name}: {e.detail}")
            errors.append({'filename': name, 'error': str(e.detail)})
            continue
        stored.append({
            'filename': name,
            'instance_id': instance.id,
            'sop_instance_uid': instance.sop_instance_uid,
            'series_instance_uid': instance.series.series_instance_uid,
            'study_id': instance.series.study_id,
            'study_instance_uid': instance.series.study.study_instance_uid,
        })
    return stored, errors


def decompress_dicom(ds):
    if hasattr(ds, "file_meta") and "TransferSyntaxUID" in ds.file_meta:
        transfer_syntax = str(ds.file_meta.TransferSyntaxUID)
        if transfer_syntax in COMPRESSED_SYNTAXES:
            logger.info(f"Decompressing DICOM with transfer syntax: {transfer_syntax}")
            ds.decompress()
            ds.file_meta.TransferSyntaxUID = ExplicitVRLittleEndian
            return True
    return False


def instance_file_path(instance):
    return dicom_storage().path(instance.file_path)


def read_for_viewer(instance):
    """Return ``(path, temporary)``; compressed files are decompressed to a temp copy."""
    path = instance_file_path(instance)
    if instance.transfer_syntax_uid not in COMPRESSED_SYNTAXES:
        return path, False
    ds = pydicom.dcmread(path, force=True)
    try:
        decompress_dicom(ds)
    except (RuntimeError, NotImplementedError) as e:
        logger.error(f"Error decompressing DICOM {instance.sop_instance_uid}: {str(e)}")
        return path, False
    temp_file = tempfile.NamedTemporaryFile(delete=False, suffix=".dcm")
    ds.save_as(temp_file.name, enforce_file_format=True)
    temp_file.close()
    return temp_file.name, True


def generate_thumbnail(ds, size=(256, 256)):
    """Render the first frame as an 8-bit PNG thumbnail."""
    if 'PixelData' not in ds:
        raise DicomValidationError("DICOM file has no pixel data")
    pixels = ds.pixel_array.astype(np.float32)
    if pixels.ndim == 3 and getattr(ds, 'SamplesPerPixel', 1) == 1:
        pixels = pixels[0]
    slope = float(getattr(ds, 'RescaleSlope', 1) or 1)
    intercept = float(getattr(ds, 'RescaleIntercept', 0) or 0)
    pixels = pixels * slope + intercept

    low, high = float(pixels.min()), float(pixels.max())
    if high > low:
        pixels = (pixels - low) / (high - low) * 255.0
    else:
        pixels = np.zeros_like(pixels)
    if getattr(ds, 'PhotometricInterpretation', '') == 'MONOCHROME1':
        pixels = 255.0 - pixels

    img = Image.fromarray(pixels.astype(np.uint8))
    img.thumbnail(size, Image.Resampling.LANCZOS)
    output = BytesIO()
    img.save(output, format='PNG', optimize=True)
    return output.getvalue()


def instance_thumbnail(instance, size=(256, 256)):
    ds = pydicom.dcmread(instance_file_path(instance), force=True)
    return generate_thumbnail(ds, size)


def study_statistics(organization):
    studies = Study.objects.filter(organization=organization)
    totals = studies.aggregate(
        total_studies=Count('id'),
        total_instances=Sum('number_of_instances'),
        total_size_bytes=Sum('total_size_bytes'),
    )
    return {
        'total_studies': totals['total_studies'] or 0,
        'total_instances': totals['total_instances'] or 0,
        'total_size_bytes': totals['total_size_bytes'] or 0,
        'by_status': {row['status']: row['count'] for row in studies.values('status').annotate(count=Count('id'))},
        'by_modality': {
            row['modality'] or 'unknown': row['count']
            for row in studies.values('modality').annotate(count=Count('id'))
        },
        'by_priority': {row['priority']: row['count'] for row in studies.values('priority').annotate(count=Count('id'))},
    }
