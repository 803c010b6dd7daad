"""Workflow statistics, patient search and denial recommendations."""

from datetime import datetime, timezone

from sqlalchemy import select

from kebilo.dashboard import increment_workflow_stat, workflow_stats_payload
from kebilo.db.models import Alert, AuditLog, BodyPartSnapshot, Document

import pytest


def _document(session, **fields):
    doc = Document(**fields)
    session.add(doc)
    session.commit()
    return doc


def test_workflow_stats_payload_defaults_to_zero(db_session):
    payload = workflow_stats_payload(db_session)
    assert payload['hasData'] is False
    assert payload['vals'] == [0, 0, 0, 0, 0, 0]
    assert payload['labels'][-1] == 'Intakes Created'


def test_increment_workflow_stat(db_session):
    day = datetime(2024, 3, 5, 15, 0, tzinfo=timezone.utc)
    increment_workflow_stat(db_session, 'referrals_processed', now=day)
    increment_workflow_stat(db_session, 'referrals_processed', amount=2, now=day)
    db_session.commit()

    payload = workflow_stats_payload(db_session, datetime(2024, 3, 5, tzinfo=timezone.utc))
    assert payload['hasData'] is True
    assert payload['stats']['referralsProcessed'] == 3

    with pytest.raises(ValueError):
        increment_workflow_stat(db_session, 'bogus')


def test_workflow_stats_route(client, db_session, physician_headers):
    resp = client.get('/api/workflow-stats')
    assert resp.status_code == 401
    assert resp.json() == {'error': 'Unauthorized. Please log in.'}

    resp = client.get('/api/workflow-stats', params={'date': '03/05/2024'}, headers=physician_headers)
    assert resp.status_code == 400

    increment_workflow_stat(db_session, 'external_docs', now=datetime(2024, 3, 5, tzinfo=timezone.utc))
    db_session.commit()
    resp = client.get('/api/workflow-stats', params={'date': '2024-03-05'}, headers=physician_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body['success'] is True
    assert body['data']['stats']['externalDocs'] == 1


def test_search_patient_records_audit(client, db_session, physician, physician_headers):
    doc = _document(db_session, patient_name='John Doe', claim_number='WC-1', physician_id=physician.id)
    db_session.add(Alert(document_id=doc.id, alert_type='deadline', title='RFA due'))
    db_session.commit()

    resp = client.get('/api/dashboard/search-patient', headers=physician_headers)
    assert resp.status_code == 400

    resp = client.get('/api/dashboard/search-patient', params={'patientName': 'nobody'}, headers=physician_headers)
    assert resp.status_code == 404
    assert 'message' in resp.json()

    resp = client.get('/api/dashboard/search-patient', params={'patientName': 'john'}, headers=physician_headers)
    assert resp.status_code == 200
    results = resp.json()['data']
    assert results[0]['alerts'][0]['title'] == 'RFA due'

    audit = db_session.execute(select(AuditLog)).scalars().all()
    assert len(audit) == 1
    assert audit[0].user_id == physician.id
    assert audit[0].path == '/api/dashboard/search-patient'


def test_recommendation_suggestions(client, db_session, physician_headers):
    _document(db_session, patient_name='John Doe', claim_number='WC-1')
    _document(db_session, patient_name='Johnny Walker', claim_number='WC-2')

    resp = client.get('/api/dashboard/recommendation', params={'patientName': 'john'}, headers=physician_headers)
    assert resp.status_code == 200
    data = resp.json()['data']
    assert sorted(data['patientNames']) == ['John Doe', 'Johnny Walker']
    assert sorted(data['claimNumbers']) == ['WC-1', 'WC-2']

    resp = client.get('/api/dashboard/recommendation', params={'claimNumber': 'ZZ'}, headers=physician_headers)
    assert resp.status_code == 404


def test_denial_recommendations_merge_snapshots(client, db_session, physician, physician_headers):
    first = _document(db_session, patient_name='John Doe', claim_number='WC-1', dob='1980-01-01',
                      ur_denial_reason='Not medically necessary', physician_id=physician.id)
    second = _document(db_session, patient_name='John Doe', claim_number='WC-1', dob='1980-01-01',
                       ur_denial_reason='Missing records', physician_id=physician.id)
    _document(db_session, patient_name='Mary Major', claim_number='WC-2', physician_id=physician.id)
    db_session.add_all([
        BodyPartSnapshot(document_id=first.id, body_part='Knee', dx='Sprain'),
        BodyPartSnapshot(document_id=second.id, body_part='Knee', dx='Sprain'),
        BodyPartSnapshot(document_id=second.id, body_part='Back', dx='Strain'),
    ])
    db_session.commit()

    resp = client.get(
        '/api/dashboard/deniel-recommendation',
        params={'physicianId': physician.id},
        headers=physician_headers,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body['success'] is True
    assert body['data']['patientNames'] == ['John Doe']
    assert body['data']['totalCount'] == 1
    snapshots = body['data']['allMatchingDocuments'][0]['bodyPartSnapshots']
    assert sorted(s['bodyPart'] for s in snapshots) == ['Back', 'Knee']


def test_denial_recommendations_trim_search_params(client, db_session, physician, physician_headers):
    _document(db_session, patient_name='John Doe', claim_number='WC-1', dob='1980-01-01',
              ur_denial_reason='Not medically necessary', physician_id=physician.id)

    resp = client.get(
        '/api/dashboard/deniel-recommendation',
        params={'patientName': ' John ', 'claimNumber': 'WC-1 ', 'dob': ' 1980-01-01', 'physicianId': f' {physician.id} '},
        headers=physician_headers,
    )
    assert resp.status_code == 200
    assert resp.json()['data']['patientNames'] == ['John Doe']
