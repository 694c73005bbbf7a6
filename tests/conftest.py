import pytest
from fastapi.testclient import TestClient


@pytest.fixture(autouse=True)
def strict_ranges(monkeypatch):
    monkeypatch.delenv("COURIER_ALLOW_RANGE_OVERFLOW", raising=False)


@pytest.fixture
def database(tmp_path):
    from server.app import db

    db.configure(f"sqlite:///{tmp_path / 'courier.db'}")
    db.init_db()
    yield db
    db.engine.dispose()


@pytest.fixture
def make_courier(database):
    from server.app.models import Courier

    def _make(**fields):
        fields.setdefault("name", "SpeedyShip")
        fields.setdefault("prefix", "SS")
        fields.setdefault("starting_tracking_number", 1000)
        fields.setdefault("current_tracking_number", fields["starting_tracking_number"])
        fields.setdefault("end_tracking_number", 9000)
        session = database.SessionLocal()
        try:
            courier = Courier(**fields)
            session.add(courier)
            session.commit()
            return courier.id
        finally:
            session.close()

    return _make


@pytest.fixture
def load_courier(database):
    from server.app.models import Courier

    def _load(courier_id):
        session = database.SessionLocal()
        try:
            return session.get(Courier, courier_id)
        finally:
            session.close()

    return _load


@pytest.fixture
def api_client(database):
    from server.app.api import app

    with TestClient(app) as client:
        yield client
