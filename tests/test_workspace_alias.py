"""Google Workspace alias management against a fake directory service."""

import httplib2
from googleapiclient.errors import HttpError

from kebilo import workspace

import pytest


def _http_error(status):
    return HttpError(httplib2.Response({'status': status}), b'{}')


class _Call:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    def execute(self):
        if self.error is not None:
            raise self.error
        return self.result


class FakeDirectory:
    def __init__(self, lookup_error=None, insert_error=None, aliases=()):
        self.lookup_error = lookup_error
        self.insert_error = insert_error
        self.aliases_list = [{'alias': alias} for alias in aliases]
        self.inserted = []

    def users(self):
        return self

    def get(self, userKey):
        return _Call({'primaryEmail': userKey.lower()}, self.lookup_error)

    def aliases(self):
        return self

    def insert(self, userKey, body):
        self.inserted.append((userKey, body))
        return _Call({}, self.insert_error)

    def list(self, userKey):
        return _Call({'aliases': self.aliases_list})


@pytest.fixture
def directory(monkeypatch):
    service = FakeDirectory()
    monkeypatch.setattr(workspace, 'build_directory_service', lambda settings: service)
    return service


@pytest.mark.parametrize(
    ('email', 'alias', 'error'),
    [
        (None, 'intake@doclatch.com', 'Email is required'),
        ('jane@doclatch.com', None, 'Alias is required'),
        ('jane', 'intake@doclatch.com', 'Invalid email format'),
        ('jane@doclatch.com', 'intake', 'Invalid alias format. Alias must be a valid email address'),
        ('jane@doclatch.com', 'intake@other.com', 'Invalid alias domain'),
    ],
)
def test_validate_alias_request(email, alias, error):
    with pytest.raises(workspace.WorkspaceError) as info:
        workspace.validate_alias_request(email, alias, 'doclatch.com')
    assert info.value.status_code == 400
    assert info.value.error == error


def test_create_alias_route(client, physician_headers, directory):
    body = {'email': 'jane@doclatch.com', 'alias': 'intake@doclatch.com'}
    assert client.post('/api/create-alias', json=body).status_code == 401

    resp = client.post('/api/create-alias', json=body, headers=physician_headers)
    assert resp.status_code == 200
    assert resp.json() == {
        'success': True,
        'message': 'Alias intake@doclatch.com successfully created for user jane@doclatch.com',
        'email': 'jane@doclatch.com',
        'alias': 'intake@doclatch.com',
    }
    assert directory.inserted == [('jane@doclatch.com', {'alias': 'intake@doclatch.com'})]

    resp = client.post('/api/create-alias', json={**body, 'alias': 'intake@gmail.com'}, headers=physician_headers)
    assert resp.status_code == 400
    assert resp.json()['details'] == (
        'The alias domain (gmail.com) must match your Google Workspace domain (doclatch.com).'
    )


@pytest.mark.parametrize(
    ('status', 'expected', 'error'),
    [
        (409, 409, 'Alias already exists'),
        (403, 403, 'Permission denied'),
        (500, 500, 'Failed to create alias'),
    ],
)
def test_create_alias_maps_insert_errors(status, expected, error):
    service = FakeDirectory(insert_error=_http_error(status))
    with pytest.raises(workspace.WorkspaceError) as info:
        workspace.create_alias(service, 'jane@doclatch.com', 'intake@doclatch.com')
    assert info.value.status_code == expected
    assert info.value.error == error


def test_create_alias_unknown_user():
    service = FakeDirectory(lookup_error=_http_error(404))
    with pytest.raises(workspace.WorkspaceError) as info:
        workspace.create_alias(service, 'ghost@doclatch.com', 'intake@doclatch.com')
    assert info.value.status_code == 404
    assert service.inserted == []


def test_list_aliases_route(client, physician_headers, directory):
    directory.aliases_list = [{'alias': 'intake@doclatch.com'}, {'alias': 'billing@doclatch.com'}]

    resp = client.get('/api/create-alias', headers=physician_headers)
    assert resp.status_code == 400
    assert resp.json() == {'error': 'Email parameter is required'}

    resp = client.get('/api/create-alias', params={'email': 'Jane@doclatch.com'}, headers=physician_headers)
    assert resp.json() == {
        'success': True,
        'email': 'jane@doclatch.com',
        'aliases': ['intake@doclatch.com', 'billing@doclatch.com'],
    }


def test_list_aliases_unknown_user():
    service = FakeDirectory(lookup_error=_http_error(404))
    with pytest.raises(workspace.WorkspaceError) as info:
        workspace.list_aliases(service, 'ghost@doclatch.com')
    assert info.value.status_code == 404
    assert info.value.as_detail()['error'] == 'User not found in Google Workspace'
