"""Document service proxy: encrypted fetches and multipart uploads."""

import os

from starlette.datastructures import UploadFile

from kebilo import document_service
from kebilo.auth import create_session_token
from kebilo.config import get_settings
from kebilo.encryption import open_envelope

import pytest

DOCUMENT_URL = 'http://docs.test/api/documents/document'
EXTRACT_URL = 'http://docs.test/api/documents/extract-documents'
QUERY = {'patient_name': 'John Doe', 'dob': '1980-01-01', 'physicianId': 'phys-1'}


def test_get_document_returns_encrypted_envelope(client, physician_headers, requests_mock):
    upstream = {'patient_name': 'John Doe', 'documents': [{'id': 'd1', 'summary': 'PR-2'}]}
    requests_mock.get(DOCUMENT_URL, json=upstream)

    resp = client.get('/api/documents/get-document', params={**QUERY, 'claim_number': 'WC-1'}, headers=physician_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body['encrypted'] is True
    assert body['route_marker'] == 'nextjs-api-route-hit'
    assert open_envelope(body, os.environ['ENCRYPTION_SECRET']) == upstream

    sent = requests_mock.last_request
    assert sent.headers['Authorization'].startswith('Bearer ')
    assert sent.qs['claim_number'] == ['wc-1']
    assert 'doi' not in sent.qs


def test_get_document_validation(client, physician_headers, physician, monkeypatch):
    resp = client.get('/api/documents/get-document', params={'patient_name': 'John Doe'}, headers=physician_headers)
    assert resp.status_code == 400
    assert resp.json() == {
        'error': 'Missing required parameters: patient_name, dob, and physicianId are required',
    }

    monkeypatch.delenv('PYTHON_API_JWT_SECRET')
    monkeypatch.delenv('JWT_SECRET')
    get_settings.cache_clear()
    headers = {'Authorization': f'Bearer {create_session_token(physician)}'}
    resp = client.get('/api/documents/get-document', params=QUERY, headers=headers)
    assert resp.status_code == 401
    assert resp.json() == {'error': 'Unauthorized - No valid session token'}


def test_get_document_passes_upstream_status(client, physician_headers, requests_mock):
    requests_mock.get(DOCUMENT_URL, status_code=404, text='{"detail": "Not found"}')

    resp = client.get('/api/documents/get-document', params=QUERY, headers=physician_headers)
    assert resp.status_code == 404
    assert resp.json() == {'error': 'Failed to fetch document: 404', 'details': '{"detail": "Not found"}'}


def test_upload_forwards_files(client, staff, staff_headers, requests_mock):
    requests_mock.post(EXTRACT_URL, json={'task_id': 'task-1', 'payload_count': 1})

    resp = client.post(
        '/api/documents/upload',
        files=[('documents', ('report.pdf', b'%PDF-1.4', 'application/pdf'))],
        data={'mode': 'gm'},
        headers=staff_headers,
    )
    assert resp.status_code == 200
    assert resp.json() == {'task_id': 'task-1', 'payload_count': 1}

    sent = requests_mock.last_request
    assert sent.qs['physicianid'] == [staff.physician_id.lower()]
    assert b'report.pdf' in sent.body
    assert b'name="mode"' in sent.body


def test_upload_rejects_unsupported_file(client, physician_headers, requests_mock):
    resp = client.post(
        '/api/documents/upload',
        files=[('documents', ('notes.exe', b'MZ', 'application/octet-stream'))],
        headers=physician_headers,
    )
    assert resp.status_code == 400
    assert resp.json()['error'].startswith('Unsupported file type for notes.exe')
    assert not requests_mock.called


def test_upload_rejects_oversized_file_before_reading(client, physician_headers, requests_mock, monkeypatch):
    reads = []

    async def _read(self, size=-1):
        reads.append(self.filename)
        return b''

    monkeypatch.setattr(document_service, 'MAX_FILE_SIZE', 16)
    monkeypatch.setattr(UploadFile, 'read', _read)

    resp = client.post(
        '/api/documents/upload',
        files=[('documents', ('scan.pdf', b'%PDF-1.4' + b'0' * 64, 'application/pdf'))],
        headers=physician_headers,
    )
    assert resp.status_code == 400
    assert resp.json() == {'error': 'scan.pdf exceeds the 40MB limit'}
    assert reads == []
    assert not requests_mock.called


@pytest.mark.parametrize(
    ('status', 'detail', 'expected'),
    [
        (402, 'Document limit exceeded for your plan', 402),
        (400, 'No active subscription found', 402),
        (422, 'Could not parse file', 422),
    ],
)
def test_upload_upstream_errors(client, physician_headers, requests_mock, status, detail, expected):
    requests_mock.post(EXTRACT_URL, status_code=status, json={'detail': detail})

    resp = client.post(
        '/api/documents/upload',
        files=[('documents', ('report.pdf', b'%PDF-1.4', 'application/pdf'))],
        headers=physician_headers,
    )
    assert resp.status_code == expected
    if expected == 402:
        assert resp.json() == {'error': detail, 'paymentRequired': True}
    else:
        assert resp.json() == {'error': 'Upload failed', 'details': detail}

