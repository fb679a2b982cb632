import logging

from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from .exceptions import AppError

logger = logging.getLogger(__name__)

DICOM_LIBRARY_KEY = 'daae3df7f522b56724aed7e3e544c0fe'
DICOM_LIBRARY_URL = f'https://www.dicomlibrary.com/?manage={DICOM_LIBRARY_KEY}'
STUDY_UID = f'dicomlibrary.{DICOM_LIBRARY_KEY}'
SERIES_UID = 'dicomlibrary.series.001'
INSTANCE_UID = 'dicomlibrary.instance.001'
CT_IMAGE_STORAGE = '1.2.840.10008.5.1.4.1.1.2'

DOWNLOAD_INSTRUCTIONS = [
    '1. Visit the DICOM Library URL',
    '2. Download the DICOM files to your computer',
    '3. Drag and drop the files into the viewer',
    '4. Or use the "Load Local Files" option in the viewer',
]


class BulkDataUnavailable(AppError):
    status_code = status.HTTP_501_NOT_IMPLEMENTED
    default_detail = 'DICOM Library requires manual file download. Please download files and use local file loader.'


class DicomLibraryDataSource:
    """Read-only data source for the public DICOM Library demo study.

    DICOM Library has no DICOMweb endpoint, so the study, series and instance
    listings are fixed and pixel data has to be downloaded by hand.
    """

    name = 'dicomlibrary'
    friendly_name = 'DICOM Library'

    def _links(self):
        return {'_dicomLibraryUrl': DICOM_LIBRARY_URL, '_requiresDownload': True}

    def study(self):
        return {
            'StudyInstanceUID': STUDY_UID,
            'StudyDescription': 'DICOM Library Study',
            'StudyDate': '20240101',
            'StudyTime': '120000',
            'AccessionNumber': DICOM_LIBRARY_KEY,
            'PatientName': 'DICOM Library Patient',
            'PatientID': 'DCM001',
            'PatientBirthDate': '19900101',
            'PatientSex': 'O',
            'StudyID': '1',
            'NumberOfStudyRelatedSeries': 1,
            'NumberOfStudyRelatedInstances': 1,
            'ModalitiesInStudy': 'CT',
            **self._links(),
            '_instructions': 'Please download DICOM files from DICOM Library and drag them into the viewer',
        }

    def search_studies(self, filters=None):
        filters = filters or {}
        study = self.study()
        checks = (
            ('patient_name', 'PatientName'),
            ('patient_id', 'PatientID'),
            ('study_instance_uid', 'StudyInstanceUID'),
        )
        for param, key in checks:
            value = (filters.get(param) or '').strip().strip('*').lower()
            if value and value not in study[key].lower():
                return []
        return [study]

    def search_series(self, study_uid):
        if study_uid != STUDY_UID:
            return []
        return [{
            'StudyInstanceUID': study_uid,
            'SeriesInstanceUID': SERIES_UID,
            'SeriesDescription': 'DICOM Library Series',
            'SeriesNumber': '1',
            'SeriesDate': '20240101',
            'SeriesTime': '120000',
            'Modality': 'CT',
            'NumberOfSeriesRelatedInstances': 1,
            'BodyPartExamined': 'CHEST',
            'ProtocolName': 'DICOM Library Protocol',
            **self._links(),
        }]

    def search_instances(self, study_uid, series_uid):
        if study_uid != STUDY_UID or series_uid != SERIES_UID:
            return []
        return [{
            'StudyInstanceUID': study_uid,
            'SeriesInstanceUID': series_uid,
            'SOPInstanceUID': INSTANCE_UID,
            'SOPClassUID': CT_IMAGE_STORAGE,
            'InstanceNumber': '1',
            'ImagePositionPatient': [0, 0, 0],
            'ImageOrientationPatient': [1, 0, 0, 0, 1, 0],
            'PixelSpacing': [1, 1],
            'SliceThickness': '5.0',
            'Rows': 512,
            'Columns': 512,
            'BitsAllocated': 16,
            'BitsStored': 16,
            'HighBit': 15,
            'PixelRepresentation': 1,
            'WindowCenter': 40,
            'WindowWidth': 400,
            'RescaleIntercept': -1024,
            'RescaleSlope': 1,
            **self._links(),
        }]

    def retrieve_metadata(self, study_uid, series_uid=None, sop_uid=None):
        return {
            'StudyInstanceUID': study_uid,
            'SeriesInstanceUID': series_uid,
            'SOPInstanceUID': sop_uid,
            **self._links(),
            '_message': 'Please download DICOM files from DICOM Library and use the local file loader',
        }

    def direct_url(self, params=None):
        return DICOM_LIBRARY_URL

    def bulk_data(self, uri=None):
        logger.info(f"Bulk data requested from DICOM Library: {uri}")
        raise BulkDataUnavailable()

    def requires_download(self, study_uid):
        return 'dicomlibrary' in study_uid

    def original_url(self, study_uid):
        if DICOM_LIBRARY_KEY in study_uid:
            return DICOM_LIBRARY_URL
        return None

    def download_instructions(self, study_uid):
        return {'url': self.original_url(study_uid) or DICOM_LIBRARY_URL, 'instructions': DOWNLOAD_INSTRUCTIONS}


def viewer_config():
    return {
        'defaultDataSourceName': DicomLibraryDataSource.name,
        'dataSources': [{
            'sourceName': DicomLibraryDataSource.name,
            'configuration': {
                'friendlyName': DicomLibraryDataSource.friendly_name,
                'name': DicomLibraryDataSource.name,
                'wadoUriRoot': 'https://www.dicomlibrary.com',
                'qidoRoot': 'https://www.dicomlibrary.com',
                'wadoRoot': 'https://www.dicomlibrary.com',
                'qidoSupportsIncludeField': False,
                'imageRendering': 'wadouri',
                'thumbnailRendering': 'wadouri',
                'enableStudyLazyLoad': True,
                'supportsFuzzyMatching': False,
                'supportsWildcard': False,
                'staticWado': False,
                'customStudies': [{
                    'studyInstanceUID': STUDY_UID,
                    'studyDescription': 'DICOM Library Study',
                    'studyDate': '20240101',
                    'patientName': 'DICOM Library Patient',
                    'patientId': 'DCM001',
                    'accessionNumber': DICOM_LIBRARY_KEY,
                    'url': DICOM_LIBRARY_URL,
                }],
            },
        }],
    }


data_source = DicomLibraryDataSource()


@api_view(['GET'])
def config(request):
    return Response(viewer_config())


@api_view(['GET'])
def studies(request):
    return Response({'studies': data_source.search_studies(request.query_params)})


@api_view(['GET'])
def series(request, study_uid):
    return Response({'series': data_source.search_series(study_uid)})


@api_view(['GET'])
def instances(request, study_uid, series_uid):
    return Response({'instances': data_source.search_instances(study_uid, series_uid)})


@api_view(['GET'])
def metadata(request, study_uid):
    return Response(data_source.retrieve_metadata(
        study_uid,
        request.query_params.get('series_uid'),
        request.query_params.get('sop_uid'),
    ))


@api_view(['GET'])
def bulk_data(request, study_uid):
    data_source.bulk_data(request.query_params.get('uri'))


@api_view(['GET'])
def download_instructions(request, study_uid):
    return Response({
        'requires_download': data_source.requires_download(study_uid),
        'direct_url': data_source.direct_url(),
        **data_source.download_instructions(study_uid),
    })
