from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError

import catalog
from auth import create_token, identity_from_user
from customers import create_customer
from database import ensure_indexes, get_db, utcnow
from main import app
from schemas import CollectionIn, CustomerIn, ProductIn, VariantIn


@pytest.fixture
def db():
    database = mongomock.MongoClient()["stylehub_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, name, email, mobile, role="customer"):
    payload = CustomerIn(name=name, email=email, mobile=mobile, password="secret123",
                         address={"line1": "12 MG Road", "area": "Indiranagar", "city": "Bengaluru",
                                  "pincode": "560038"})
    return create_customer(db, payload, role=role)


@pytest.fixture
def owner_doc(db):
    return make_user(db, "Owner Admin", "owner@stylehub.com", "9876543210", role="owner")


@pytest.fixture
def owner(owner_doc):
    return identity_from_user(owner_doc)


@pytest.fixture
def owner_headers(owner_doc):
    return {"Authorization": f"Bearer {create_token(owner_doc)}"}


@pytest.fixture
def customer_doc(db):
    return make_user(db, "Asha Rao", "asha@example.com", "9123456780")


@pytest.fixture
def customer(customer_doc):
    return identity_from_user(customer_doc)


@pytest.fixture
def customer_headers(customer_doc):
    return {"Authorization": f"Bearer {create_token(customer_doc)}"}


@pytest.fixture
def collection(db, owner):
    return catalog.create_collection(db, owner, CollectionIn(name="Summer", image_url="https://cdn/summer.jpg"))


@pytest.fixture
def product(db, owner, collection):
    payload = ProductIn(
        collection_id=str(collection["_id"]),
        name="Linen Shirt",
        description="Breathable linen shirt",
        type="top",
        gender="m",
        activity="casual",
        images=[{"color": "red", "urls": ["https://cdn/shirt-red.jpg"]}],
        available_colors=["Red", "blue"],
        available_sizes=["m", "S"],
    )
    return catalog.create_product(db, owner, payload)


@pytest.fixture
def variants(db, owner, product):
    return catalog.upsert_variants(db, owner, str(product["_id"]), [
        VariantIn(size="S", color="red", quantity=5, price=999),
        VariantIn(size="M", color="blue", quantity=2, price=1200),
    ])


@pytest.fixture
def later():
    return utcnow() + timedelta(days=30)


@pytest.fixture
def make_customer(db):
    def _make(name, email, mobile):
        return make_user(db, name, email, mobile)
    return _make


class FailingDatabase:
    """Passes everything through to `db`, except that call number `on_call` of `collection.method` raises."""

    def __init__(self, db, collection, method, on_call=1):
        self._db = db
        self.collection = collection
        self.method = method
        self.on_call = on_call
        self.calls = 0

    def __getitem__(self, name):
        if name == self.collection:
            return _FailingCollection(self._db[name], self)
        return self._db[name]

    def __getattr__(self, name):
        return getattr(self._db, name)


class _FailingCollection:
    def __init__(self, collection, owner):
        self._collection = collection
        self._owner = owner

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if name != self._owner.method:
            return attr

        def call(*args, **kwargs):
            self._owner.calls += 1
            if self._owner.calls == self._owner.on_call:
                raise PyMongoError("write failed")
            return attr(*args, **kwargs)
        return call


@pytest.fixture
def failing_db(db):
    def _make(collection, method, on_call=1):
        return FailingDatabase(db, collection, method, on_call)
    return _make
