import io

import mongomock
import pytest

from sapopsa import Store, create_app

ADMIN_EMAIL = "admin@example.com"
CUSTOMER_EMAIL = "alice@example.com"


class Session:
    """Test client bound to one signed-in email."""

    def __init__(self, client, email, token):
        self.client = client
        self.email = email
        self.token = token

    def open(self, method, path, **kwargs):
        headers = dict(kwargs.pop("headers", None) or {})
        headers.setdefault("auth", f"Bearer {self.token}")
        query = dict(kwargs.pop("query_string", None) or {})
        query.setdefault("email", self.email)
        return self.client.open(
            path, method=method, headers=headers, query_string=query, **kwargs
        )

    def get(self, path, **kwargs):
        return self.open("GET", path, **kwargs)

    def post(self, path, **kwargs):
        return self.open("POST", path, **kwargs)

    def patch(self, path, **kwargs):
        return self.open("PATCH", path, **kwargs)

    def delete(self, path, **kwargs):
        return self.open("DELETE", path, **kwargs)


def sign_in(client, email, **profile):
    response = client.put("/user", json={"email": email, **profile})
    assert response.status_code == 200
    return Session(client, email, response.get_json()["token"])


def image(name, content=b"\x89PNG\r\n\x1a\nfake"):
    return (io.BytesIO(content), name)


@pytest.fixture
def store():
    return Store(mongomock.MongoClient()["sapopsa"])


@pytest.fixture
def upload_folder(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def app(store, upload_folder):
    return create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret",
            "UPLOAD_FOLDER": str(upload_folder),
            "HOST_URL": "http://shop.test/",
            "DEFAULT_ADMIN_EMAIL": "",
        },
        store=store,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin(client, store):
    session = sign_in(client, ADMIN_EMAIL, name="Admin")
    store.users.update_one({"email": ADMIN_EMAIL}, {"$set": {"role": "admin"}})
    return session


@pytest.fixture
def customer(client):
    return sign_in(client, CUSTOMER_EMAIL, name="Alice")
