"""Treatment history merging and the streamed OpenAI summary."""

import json
from datetime import timedelta
from types import SimpleNamespace

from kebilo import openai_client
from kebilo.db.models import Document, TreatmentHistory
from kebilo.time_utils import utc_now
from kebilo.treatment_history import has_lookup_keys, merge_history, summary_messages

import pytest


def test_has_lookup_keys():
    assert has_lookup_keys('John Doe', '1980-01-01', None)
    assert has_lookup_keys(None, None, 'WC-1')
    assert not has_lookup_keys('John Doe', None, 'Not specified')
    assert not has_lookup_keys('  ', '1980-01-01', '')


def test_merge_history_keeps_first_report():
    newer = {'musculoskeletal': [{'report_date': '2024-02-01', 'physician': 'Dr. A', 'note': 'newer'}]}
    older = {
        'musculoskeletal': [
            {'report_date': '2024-02-01', 'physician': 'Dr. A', 'note': 'older'},
            {'report_date': '2023-12-01', 'physician': 'Dr. B'},
        ],
        'neurological': 'not a list',
    }
    merged = merge_history([newer, older])
    assert [r.get('note') for r in merged['musculoskeletal']] == ['newer', None]
    assert 'neurological' not in merged


def test_summary_messages_limit_words():
    messages = summary_messages('Knee sprain', max_words=50)
    assert messages[0]['role'] == 'system'
    assert 'under 50 words' in messages[1]['content']
    assert 'Knee sprain' in messages[1]['content']


def test_treatment_history_route(client, db_session, physician, physician_headers):
    now = utc_now()
    doc = Document(patient_name='John Doe', claim_number='WC-1', gcs_file_link='gs://bucket/report.pdf')
    db_session.add(doc)
    db_session.commit()
    db_session.add_all([
        TreatmentHistory(
            patient_name='John Doe', dob='1980-01-01', claim_number='WC-1', physician_id=physician.id,
            created_at=now - timedelta(days=5),
            history_data={'musculoskeletal': [
                {'report_date': '2023-06-01', 'physician': 'Dr. B'},
                {'report_date': 'unknown', 'physician': 'Dr. C'},
            ]},
        ),
        TreatmentHistory(
            patient_name='John Doe', dob='1980-01-01', claim_number='WC-1', physician_id=physician.id,
            created_at=now,
            history_data={'musculoskeletal': [
                {'report_date': '2024-01-15', 'physician': 'Dr. A', 'document_id': doc.id},
            ]},
        ),
    ])
    db_session.commit()

    resp = client.get('/api/treatment-history', params={'patient_name': 'John Doe'}, headers=physician_headers)
    assert resp.status_code == 400
    assert resp.json() == {'error': 'Missing required parameter: physicianId'}

    resp = client.get(
        '/api/treatment-history',
        params={'physicianId': physician.id, 'patient_name': 'John Doe'},
        headers=physician_headers,
    )
    assert resp.status_code == 400
    assert resp.json() == {'error': 'Minimum requirements: either (patient_name + dob) OR claim_number'}

    resp = client.get(
        '/api/treatment-history',
        params={'physicianId': physician.id, 'claim_number': 'wc-1'},
        headers=physician_headers,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body['debug']['recordsFound'] == 2
    reports = body['data']['musculoskeletal']
    assert [r['physician'] for r in reports] == ['Dr. A', 'Dr. B', 'Dr. C']
    assert reports[0]['gcs_file_link'] == 'gs://bucket/report.pdf'

    resp = client.get(
        '/api/treatment-history',
        params={'physicianId': physician.id, 'patient_name': 'Jane Roe', 'dob': '1990-01-01'},
        headers=physician_headers,
    )
    assert resp.json() == {'success': True, 'data': None, 'message': 'No treatment history found'}


def _events(resp):
    return [line[len('data: '):] for line in resp.text.split('\n\n') if line.startswith('data: ')]


def test_openai_summary_streams_offline(client, physician_headers):
    assert client.post('/api/openai-summary', json={'context': 'x'}).status_code == 401

    resp = client.post('/api/openai-summary', json={}, headers=physician_headers)
    assert resp.status_code == 400
    assert resp.json() == {'error': 'Context is required'}

    resp = client.post('/api/openai-summary', json={'context': 'Knee sprain', 'maxWords': 80}, headers=physician_headers)
    assert resp.status_code == 200
    assert resp.headers['content-type'].startswith('text/event-stream')
    events = _events(resp)
    assert events[-1] == '[DONE]'
    text = ''.join(json.loads(e)['choices'][0]['delta']['content'] for e in events[:-1])
    assert text.startswith('Offline response (')


def test_openai_summary_without_key(client, physician_headers, monkeypatch):
    monkeypatch.delenv('USE_OFFLINE_MODEL')
    resp = client.post('/api/openai-summary', json={'context': 'Knee sprain'}, headers=physician_headers)
    assert resp.status_code == 500
    assert resp.json() == {'error': 'Server misconfiguration: Missing API Key'}


@pytest.mark.parametrize('context', ['', None])
def test_openai_summary_rejects_blank_context(client, physician_headers, context):
    resp = client.post('/api/openai-summary', json={'context': context}, headers=physician_headers)
    assert resp.status_code == 400


class _Chunk:
    def __init__(self, content):
        self.content = content
        self.choices = [SimpleNamespace(delta=SimpleNamespace(content=content))]

    def model_dump(self):
        return {'choices': [{'index': 0, 'delta': {'content': self.content}}]}


class FakeOpenAI:
    def __init__(self, chunks=(), error=None, **kwargs):
        self.requests = []
        self._chunks = chunks
        self._error = error
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.requests.append(kwargs)
        if self._error is not None:
            raise self._error
        return iter(self._chunks)


@pytest.fixture
def remote_model(monkeypatch):
    monkeypatch.delenv('USE_OFFLINE_MODEL')
    monkeypatch.delenv('AZURE_OPENAI_ENDPOINT', raising=False)
    monkeypatch.setenv('OPENAI_API_KEY', 'sk-test')
    clients = []

    def _install(**options):
        def _factory(**kwargs):
            client = FakeOpenAI(**options)
            clients.append(client)
            return client

        monkeypatch.setattr(openai_client, 'OpenAI', _factory)
        return clients

    return _install


def test_openai_summary_connection_failure_is_server_error(client, physician_headers, remote_model):
    remote_model(error=ConnectionError('connection refused'))

    resp = client.post('/api/openai-summary', json={'context': 'Knee sprain'}, headers=physician_headers)
    assert resp.status_code == 500
    assert resp.json() == {'error': 'Failed to generate summary'}


def test_stream_chat_opens_stream_before_iteration(remote_model):
    clients = remote_model(error=ConnectionError('connection refused'))

    with pytest.raises(RuntimeError, match='Error calling OpenAI: connection refused'):
        openai_client.stream_chat([{'role': 'user', 'content': 'hi'}])
    assert clients[0].requests[0]['stream'] is True


def test_openai_summary_streams_remote_chunks(client, physician_headers, remote_model):
    clients = remote_model(chunks=[_Chunk('Knee '), _Chunk(None), _Chunk('sprain.')])

    resp = client.post('/api/openai-summary', json={'context': 'Knee sprain', 'maxWords': 20}, headers=physician_headers)
    assert resp.status_code == 200
    events = _events(resp)
    assert events[-1] == '[DONE]'
    assert [json.loads(e)['choices'][0]['delta']['content'] for e in events[:-1]] == ['Knee ', 'sprain.']
    assert clients[0].requests[0]['model'] == 'gpt-4o-mini'
