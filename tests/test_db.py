import pytest

from backend.db import Store
from backend.errors import BackendUnavailableError


@pytest.fixture
def unreachable(tmp_path):
    return Store(str(tmp_path / 'missing-dir' / 'pickups.sqlite'))


def test_unopenable_database_is_backend_unavailable(unreachable):
    with pytest.raises(BackendUnavailableError):
        unreachable.init_schema()
    with pytest.raises(BackendUnavailableError):
        unreachable.select('pickups')
    with pytest.raises(BackendUnavailableError):
        unreachable.insert('rewards', {'id': 'r1', 'title': 'Tote bag', 'points_required': 50})
    with pytest.raises(BackendUnavailableError):
        with unreachable.transaction():
            pass


def test_missing_tables_are_backend_unavailable(tmp_path):
    bare = Store(str(tmp_path / 'bare.sqlite'))
    with pytest.raises(BackendUnavailableError, match='no such table'):
        bare.select('pickups')
    with pytest.raises(BackendUnavailableError):
        bare.sum('points', 'points')
    with pytest.raises(BackendUnavailableError):
        bare.update('pickups', {'status': 'Rejected'}, {'id': 'p1'})


def test_failed_write_publishes_nothing(tmp_path):
    bare = Store(str(tmp_path / 'bare.sqlite'))
    seen = []
    bare.subscribe('rewards', seen.append).start()
    with pytest.raises(BackendUnavailableError):
        bare.insert('rewards', {'id': 'r1', 'title': 'Tote bag', 'points_required': 50})
    assert seen == []


def test_api_reports_unavailable_database(app, client, tmp_path):
    app.extensions['store'].db_path = str(tmp_path / 'gone' / 'pickups.sqlite')
    resp = client.get('/api/rewards')
    assert resp.status_code == 503
    assert resp.get_json()['kind'] == 'BackendUnavailableError'
