import pytest
from fastapi.testclient import TestClient

from marketplace.api.factory import create_app


@pytest.fixture()
def client(marketplace):
    return TestClient(create_app(marketplace))


@pytest.fixture()
def customer_headers():
    return {"X-User-Id": "cust-1"}


@pytest.fixture()
def admin_headers():
    return {"X-User-Id": "admin-1", "X-User-Role": "admin"}
