"""Duplicate detection and recent-patient grouping heuristics."""

from datetime import datetime, timedelta, timezone

from kebilo.patient_matching import (
    extract_claim_core,
    find_duplicate_documents,
    fuzzy_name_match,
    group_recent_patients,
    have_common_claim_sequence,
    names_match,
    normalize_claim_number,
    normalize_patient_name,
)

BASE = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _doc(doc_id, name, claim, days=0, dob='1980-01-01'):
    return {
        'id': doc_id,
        'patientName': name,
        'claimNumber': claim,
        'dob': dob,
        'createdAt': BASE + timedelta(days=days),
    }


def test_claim_normalisation_drops_placeholders():
    assert normalize_claim_number('jh-3345 01') == 'JH334501'
    assert normalize_claim_number('Not specified') == ''
    assert normalize_claim_number(None) == ''
    assert extract_claim_core('JH3345-01') == 'JH3345'


def test_common_claim_sequence():
    assert have_common_claim_sequence('JH3345-01', 'JH3345-02')
    assert have_common_claim_sequence('WC123456', 'WC1234567')
    assert not have_common_claim_sequence('JH3345', 'JH3345')
    assert not have_common_claim_sequence('AB12', 'XY99')
    assert not have_common_claim_sequence('N/A', 'JH3345')


def test_names_match_needs_two_shared_parts():
    assert names_match('DOE, JOHN A.', 'John Doe')
    assert not names_match('John Smith', 'John Doe')
    assert not names_match('Doe', 'John Doe')


def test_find_duplicate_documents_groups_related_claims():
    docs = [
        _doc('a', 'John Doe', 'JH3345-01', days=1),
        _doc('b', 'Doe, John', 'JH3345-02', days=3),
        _doc('c', 'John Doe', 'ZZ9999', days=2),
        _doc('d', 'Jane Roe', 'JH3345-03', days=4),
    ]
    duplicates = find_duplicate_documents('John Doe', docs)
    assert [doc['id'] for doc in duplicates] == ['b', 'a']


def test_find_duplicate_documents_needs_two_matches():
    docs = [_doc('a', 'John Doe', 'JH3345-01'), _doc('b', 'Jane Roe', 'JH3345-02')]
    assert find_duplicate_documents('John Doe', docs) == []


def test_patient_name_normalisation_and_fuzzy_match():
    assert normalize_patient_name('Doe, John A') == 'doe john'
    assert normalize_patient_name('John Q Doe') == 'doe john'
    assert fuzzy_name_match('doe jon', 'doe john')
    assert not fuzzy_name_match('doe john', 'smith mary')


def test_group_recent_patients_merges_by_claim():
    docs = [
        _doc('new', 'John Doe', 'WC-100', days=5),
        _doc('old', 'Jonathan Doe', 'WC100', days=1, dob='1975-03-03'),
    ]
    groups = group_recent_patients(docs)
    assert len(groups) == 1
    group = groups[0]
    assert group['documentCount'] == 2
    assert group['patientName'] == 'Jonathan Doe'
    assert group['documentIds'] == ['new', 'old']
    assert len(group['matchingDocuments']) == 2


def test_group_recent_patients_merges_by_name_and_dob_without_claim():
    docs = [
        _doc('one', 'Mary Major', None, days=3, dob='1990-02-10'),
        _doc('two', 'Mary Major', 'Not specified', days=2, dob='1990-02-11'),
        _doc('three', 'Mary Major', None, days=1, dob='1970-06-06'),
    ]
    groups = group_recent_patients(docs)
    assert [group['documentCount'] for group in groups] == [2, 1]


def test_group_recent_patients_skips_placeholder_names_and_limits():
    docs = [_doc(f'd{i}', f'Patient{i} Person{i}', f'CL{i:04d}', days=i) for i in range(12)]
    docs.append(_doc('x', 'Not specified', 'CL9999', days=20))
    groups = group_recent_patients(docs, limit=10)
    assert len(groups) == 10
    assert groups[0]['patientName'] == 'Patient11 Person11'
    assert all(group['patientName'] != 'Not specified' for group in groups)
