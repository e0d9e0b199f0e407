"""Pytest configuration.

The application modules live at the repository root, so the root is put on
`sys.path` for test collection regardless of pytest's import mode.
"""

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app import RiskAssessmentSystem  # noqa: E402


@pytest.fixture
def system(tmp_path):
    return RiskAssessmentSystem({
        'TESTING': True,
        'DATABASE_PATH': str(tmp_path / 'data' / 'ehs_test.db'),
    })


@pytest.fixture
def client(system):
    return system.app.test_client()


@pytest.fixture
def make_assessment(client):
    """Create a risk assessment through the API and return its id"""

    def _make(hazards=None, **overrides):
        payload = {
            'title': 'Warehouse racking inspection',
            'activity': 'Pallet loading',
            'location': 'Warehouse B',
            'assessor_id': 'user_42',
            'hazards': hazards if hazards is not None else [],
        }
        payload.update(overrides)
        response = client.post('/api/ra', json=payload)
        assert response.status_code == 201, response.get_json()
        return response.get_json()['id']

    return _make
