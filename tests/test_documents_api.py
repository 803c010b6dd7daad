"""Duplicate/recent patients, failed documents and document corrections."""

from datetime import timedelta

from kebilo.db.models import Document, DocumentSummary, FailDoc
from kebilo.time_utils import utc_now


def _document(session, physician_id, name, claim, days_ago=0, **fields):
    now = utc_now()
    doc = Document(
        patient_name=name,
        claim_number=claim,
        dob=fields.pop('dob', '1980-01-01'),
        physician_id=physician_id,
        mode=fields.pop('mode', 'wc'),
        created_at=now - timedelta(days=days_ago),
        updated_at=now - timedelta(days=days_ago),
        **fields,
    )
    session.add(doc)
    session.commit()
    return doc


def test_duplicate_patients_route(client, db_session, physician, physician_headers):
    _document(db_session, physician.id, 'John Doe', 'JH3345-01', days_ago=3)
    _document(db_session, physician.id, 'Doe, John', 'JH3345-02', days_ago=1)
    _document(db_session, physician.id, 'John Doe', 'Not specified')

    resp = client.get('/api/get-duplicate-patients')
    assert resp.status_code == 400
    assert resp.json() == {'error': 'Patient name is required'}

    resp = client.get('/api/get-duplicate-patients', params={'patientName': 'John Doe'})
    assert resp.status_code == 401

    resp = client.get('/api/get-duplicate-patients', params={'patientName': 'Doe'}, headers=physician_headers)
    assert resp.status_code == 400

    resp = client.get('/api/get-duplicate-patients', params={'patientName': 'John Doe'}, headers=physician_headers)
    assert resp.status_code == 200
    assert [doc['claimNumber'] for doc in resp.json()] == ['JH3345-02', 'JH3345-01']

    resp = client.get(
        '/api/get-duplicate-patients',
        params={'patientName': 'John Doe', 'mode': 'gm'},
        headers=physician_headers,
    )
    assert resp.json() == []


def test_recent_patients_route(client, db_session, physician, physician_headers):
    doc = _document(db_session, physician.id, 'Mary Major', 'WC-200', days_ago=2)
    db_session.add(DocumentSummary(document_id=doc.id, type='PR-2', summary='Progress report'))
    db_session.commit()
    _document(db_session, physician.id, 'Mary Major', 'WC200', days_ago=1)
    _document(db_session, physician.id, 'Not specified', 'WC300')

    resp = client.get('/api/get-recent-patients', headers=physician_headers)
    assert resp.status_code == 200
    groups = resp.json()
    assert len(groups) == 1
    assert groups[0]['documentCount'] == 2

    resp = client.get('/api/get-recent-patients', params={'search': 'zzz'}, headers=physician_headers)
    assert resp.json() == []


def test_failed_documents_listing(client, db_session, physician, physician_headers, make_user, headers_for):
    resp = client.get('/api/get-failed-document')
    assert resp.status_code == 401
    assert resp.json() == {'error': 'Unauthorized: No valid session'}

    resp = client.get('/api/get-failed-document', headers=physician_headers)
    assert resp.json() == {'message': 'No failed documents found', 'data': [], 'totalDocuments': 0}

    db_session.add(FailDoc(reason='OCR failed', patient_name='John Doe', physician_id=physician.id))
    db_session.commit()
    resp = client.get('/api/get-failed-document', headers=physician_headers)
    body = resp.json()
    assert body['totalDocuments'] == 1
    assert body['documents'][0]['reason'] == 'OCR failed'

    orphan = make_user('Staff')
    resp = client.get('/api/get-failed-document', headers=headers_for(orphan))
    assert resp.status_code == 400
    assert resp.json() == {'error': 'Physician ID not found in session'}


def test_fix_and_delete_failed_document(client, db_session, physician, physician_headers):
    doc = _document(db_session, physician.id, 'Unknown', None)
    failed = FailDoc(reason='Missing claim', physician_id=physician.id)
    db_session.add(failed)
    db_session.commit()

    resp = client.patch(f'/api/get-failed-document/{doc.id}', json={}, headers=physician_headers)
    assert resp.status_code == 400

    resp = client.patch(f'/api/get-failed-document/{doc.id}', json={'dob': '05/01/1980'}, headers=physician_headers)
    assert resp.status_code == 400
    assert resp.json() == {'error': 'Invalid DOB format. Use YYYY-MM-DD'}

    resp = client.patch(
        f'/api/get-failed-document/{doc.id}',
        json={'patientName': 'John Doe', 'claimNumber': 'WC-1', 'dob': '1980-05-01T00:00:00.000Z'},
        headers=physician_headers,
    )
    assert resp.status_code == 200
    document = resp.json()['document']
    assert document['dob'] == '1980-05-01'
    assert document['status'] == 'updated'

    resp = client.patch('/api/get-failed-document/missing', json={'doi': '2024-01-01'}, headers=physician_headers)
    assert resp.status_code == 404

    resp = client.delete(f'/api/get-failed-document/{failed.id}', headers=physician_headers)
    assert resp.status_code == 200
    db_session.expire_all()
    assert db_session.get(FailDoc, failed.id) is None


def test_update_and_verify_document(client, db_session, physician, physician_headers):
    doc = _document(db_session, physician.id, 'John Doe', 'WC-1')

    resp = client.patch('/api/update-document', json={}, headers=physician_headers)
    assert resp.status_code == 400
    assert resp.json() == {'error': 'Document ID is required'}

    resp = client.patch(
        '/api/update-document',
        params={'documentId': doc.id},
        json={'patientName': ' Jon Doe ', 'claimNumber': 'WC-2', 'dob': '1980-01-02'},
        headers=physician_headers,
    )
    assert resp.status_code == 200
    updated = resp.json()['document']
    assert updated['patientName'] == 'Jon Doe'
    assert updated['dob'] == '1980-01-02T00:00:00Z'

    resp = client.post('/api/verify-document', headers=physician_headers)
    assert resp.json() == {'error': 'Missing required parameter: document_id'}

    resp = client.post('/api/verify-document', params={'document_id': doc.id}, headers=physician_headers)
    assert resp.json() == {'success': True, 'message': '1 document verified successfully.'}
    db_session.expire_all()
    assert db_session.get(Document, doc.id).status == 'verified'


def test_patient_update_and_listing(client, db_session, physician, physician_headers):
    _document(db_session, physician.id, 'John Doe', 'WC-1', dob='1980-01-01')
    _document(db_session, physician.id, 'John Doe', 'WC-1', dob='1980-01-01', days_ago=1)

    resp = client.post('/api/patients/update', json={})
    assert resp.status_code == 401
    assert resp.json() == {'error': 'Unauthorized - Please sign in'}

    resp = client.post(
        '/api/patients/update',
        json={'originalPatient': {'patientName': 'Nobody', 'dob': '1980-01-01'}, 'updatedData': {'dob': '1981-01-01'}},
        headers=physician_headers,
    )
    assert resp.status_code == 404

    resp = client.post(
        '/api/patients/update',
        json={
            'originalPatient': {'patientName': 'John Doe', 'dob': '1980-01-01'},
            'updatedData': {'patientName': 'John A Doe', 'dob': '1980-01-01', 'claimNumber': 'WC-9'},
        },
        headers=physician_headers,
    )
    assert resp.status_code == 200
    assert resp.json()['updatedCount'] == 2

    resp = client.get('/api/get-patient', headers=physician_headers)
    assert resp.json() == {'error': 'Physician ID is required'}

    resp = client.get('/api/get-patient', params={'physicianId': physician.id}, headers=physician_headers)
    body = resp.json()
    assert body['total'] == 1
    assert body['data'][0]['claimNumber'] == 'WC-9'
    assert body['data'][0]['bodyPartSnapshots'] == []

    doc_id = body['data'][0]['id']
    resp = client.get(f'/api/get-patient/{doc_id}', headers=physician_headers)
    assert resp.json()['patientName'] == 'John A Doe'
    assert client.get('/api/get-patient/missing', headers=physician_headers).status_code == 404

    resp = client.get('/api/patient-documents', headers=physician_headers)
    assert len(resp.json()['documents']) == 2


def test_update_document_accepts_numeric_claim(client, db_session, physician, physician_headers):
    doc = _document(db_session, physician.id, 'John Doe', 'WC-1')

    resp = client.patch(
        '/api/update-document',
        params={'documentId': doc.id},
        json={'patientName': 'John Doe', 'claimNumber': 12345},
        headers=physician_headers,
    )
    assert resp.status_code == 200
    assert resp.json()['document']['claimNumber'] == '12345'


def test_documents_of_other_physicians_are_hidden(client, db_session, physician_headers, make_user):
    other = make_user('Physician')
    doc = _document(db_session, other.id, 'Mary Major', 'WC-7')

    resp = client.patch(
        '/api/update-document',
        params={'documentId': doc.id},
        json={'patientName': 'Someone Else'},
        headers=physician_headers,
    )
    assert resp.status_code == 404

    resp = client.post('/api/verify-document', params={'document_id': doc.id}, headers=physician_headers)
    assert resp.status_code == 404

    resp = client.patch(f'/api/get-failed-document/{doc.id}', json={'doi': '2024-01-01'}, headers=physician_headers)
    assert resp.status_code == 404

    assert client.get(f'/api/get-patient/{doc.id}', headers=physician_headers).status_code == 404

    db_session.expire_all()
    stored = db_session.get(Document, doc.id)
    assert stored.patient_name == 'Mary Major'
    assert stored.status != 'verified'
