import pytest

from backend.app.db import connect, init_db
from tests.helpers import add_products


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "shop.db")


@pytest.fixture
def conn(db_path):
    c = connect(db_path)
    init_db(c)
    yield c
    c.close()


@pytest.fixture
def catalog_10(conn):
    """Ten active products, ids 1..10."""
    add_products(conn, *range(1, 11))
    return conn
