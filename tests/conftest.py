from datetime import date, timedelta

import pytest

from redconnect import compatibility
from redconnect.db import get_conn
from redconnect.events import Notifier
from redconnect.ledger import InventoryLedger
from redconnect.lifecycle import RequestManager
from redconnect.offline import Connectivity
from redconnect.service import Service


@pytest.fixture
def today():
    return date.today()


@pytest.fixture
def conn():
    c = get_conn(":memory:")
    yield c
    c.close()


@pytest.fixture(autouse=True)
def builtin_table():
    yield
    compatibility.use_matrix(None)


@pytest.fixture
def ledger(conn):
    return InventoryLedger(conn, actor="tester")


@pytest.fixture
def manager(conn, ledger):
    return RequestManager(conn, ledger, actor="tester")


@pytest.fixture
def connectivity():
    return Connectivity(online=True)


@pytest.fixture
def changes():
    return []


@pytest.fixture
def service(conn, connectivity, changes):
    notifier = Notifier()
    notifier.subscribe(changes.append)
    return Service(conn, connectivity=connectivity, notifier=notifier, actor="tester")


@pytest.fixture
def add(ledger, today):
    """Put an Available unit on the ledger, collected `age` days ago."""
    def _add(unit_id, unit_type="O-", age=1, **kw):
        return ledger.add_unit({
            "id": unit_id, "type": unit_type, "volume": kw.pop("volume", 350),
            "collection_date": today - timedelta(days=age), **kw,
        })
    return _add
