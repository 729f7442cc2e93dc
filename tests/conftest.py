from decimal import Decimal

import pytest

from circulation_service import catalog
from circulation_service.circulation import CirculationManager
from circulation_service.db import make_engine, make_session_factory
from circulation_service.fines import FineCalculator

from helpers import DAY_0, FakeClock


@pytest.fixture
def session_factory(tmp_path, request):
    # Per-test database file so concurrent connections share one store
    db_file = tmp_path / f"test_{request.node.name}.db"
    engine = make_engine(f"sqlite:///{db_file}", lock_timeout=5)
    factory = make_session_factory(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(DAY_0)


@pytest.fixture
def manager(session_factory, clock):
    return CirculationManager(
        session_factory,
        fine_calculator=FineCalculator(Decimal("5.00")),
        retry_attempts=5,
        retry_backoff=0.01,
        clock=clock,
    )


@pytest.fixture
def library(session_factory):
    """Catalog from the demo data: Кобзар (INV-001, INV-002), Захар Беркут (INV-003)."""
    session = session_factory()
    try:
        shevchenko = catalog.create_author(session, {"full_name": "Тарас Шевченко"})
        franko = catalog.create_author(session, {"full_name": "Іван Франко"})
        kobzar = catalog.create_book(
            session,
            {"title": "Кобзар", "isbn": "9789660374638", "author_ids": [shevchenko["author_id"]]},
        )
        berkut = catalog.create_book(
            session,
            {"title": "Захар Беркут", "isbn": "9786177535255", "author_ids": [franko["author_id"]]},
        )
        inv1 = catalog.add_instance(session, kobzar["book_id"], {"inventory_number": "INV-001"})
        inv2 = catalog.add_instance(session, kobzar["book_id"], {"inventory_number": "INV-002"})
        inv3 = catalog.add_instance(session, berkut["book_id"], {"inventory_number": "INV-003"})
        r1 = catalog.create_reader(
            session, {"full_name": "Медвідь Богдан", "ticket_number": "R-001"}
        )
        r2 = catalog.create_reader(
            session, {"full_name": "Стародуб Михайло", "ticket_number": "R-002"}
        )
    finally:
        session.close()

    return {
        "kobzar": kobzar["book_id"],
        "berkut": berkut["book_id"],
        "INV-001": inv1["instance_id"],
        "INV-002": inv2["instance_id"],
        "INV-003": inv3["instance_id"],
        "reader1": r1["reader_id"],
        "reader2": r2["reader_id"],
    }
