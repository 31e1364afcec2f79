import json
from datetime import datetime, timezone

import pytest

from slotbooking.database import build_engine, build_session_factory, init_db
from slotbooking.models.tables import (
    AvailabilityExceptions,
    AvailabilityTemplates,
    Companies,
    Professionals,
    Services,
)
from slotbooking.services.slots import BookingConfig, BookingCoordinator

# Monday 2026-03-02 09:00 in Santiago (UTC-3)
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

WEEKDAY_RULES = {"1": [{"start": "09:00", "end": "13:00"}, {"start": "14:00", "end": "18:00"}]}


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def seed(session_factory):
    def _seed(*objects):
        with session_factory() as db, db.begin():
            db.add_all(objects)
    return _seed


@pytest.fixture
def company(seed):
    seed(
        Companies(id="c1", name="Clínica Sur", timezone="America/Santiago"),
        Professionals(id="p1", company_id="c1", name="Dra. Rojas"),
        Professionals(id="p2", company_id="c1", name="Dr. Soto"),
        Services(id="s1", company_id="c1", name="Consulta general"),
    )
    return "c1"


@pytest.fixture
def add_template(seed):
    def _add(rules, company_id="c1", professional_id="p1"):
        raw = rules if isinstance(rules, str) else json.dumps(rules)
        seed(AvailabilityTemplates(company_id=company_id, professional_id=professional_id, weekly_rules=raw))
    return _add


@pytest.fixture
def add_exception(seed):
    def _add(data, exception_type=None, company_id="c1", professional_id="p1"):
        raw = data if isinstance(data, str) else json.dumps(data)
        seed(AvailabilityExceptions(
            company_id=company_id,
            professional_id=professional_id,
            exception_type=exception_type,
            data=raw,
        ))
    return _add


@pytest.fixture
def emitted():
    return []


@pytest.fixture
def booking_config():
    return BookingConfig()


@pytest.fixture
def coordinator(session_factory, booking_config, emitted):
    return BookingCoordinator(
        session_factory,
        config=booking_config,
        emit=lambda event_type, payload: emitted.append((event_type, payload)),
        clock=lambda: NOW,
    )


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def booking_kwargs(**overrides) -> dict:
    data = {
        "company_id": "c1",
        "professional_id": "p1",
        "service_id": "s1",
        "client_name": "Ana Pérez",
        "client_phone": "+56911111111",
        "start_at": utc(2026, 3, 2, 13, 0),
    }
    data.update(overrides)
    return data
