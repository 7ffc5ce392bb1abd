from datetime import datetime, timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from accounts import AccountService
from cart import CartService
from config import Settings
from errors import DependencyFailure
from main import create_app
from repositories import CartRepository, ProductRepository, UserRepository
from security import PasswordHasher, TokenIssuer

PASSWORD = "LongPass123"
JWT_SECRET = "test-secret-0123456789abcdef0123456789abcdef"


class RecordingMailer:
    """Collects outgoing mail instead of calling resend."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to, subject, text=None, html=None):
        if self.fail:
            raise DependencyFailure("Failed to send email", detail="connection refused")
        self.sent.append({"to": to, "subject": subject, "text": text, "html": html})
        return f"msg-{len(self.sent)}"

    def last_otp(self):
        text = self.sent[-1]["text"]
        return text.rsplit(": ", 1)[-1]


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings():
    return Settings(_env_file=None, JWT_SECRET=JWT_SECRET, BCRYPT_ROUNDS=4, RESEND_API_KEY="")


@pytest.fixture
def db():
    return mongomock.MongoClient()["ecommerce_express_test"]


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture
def client(settings, db, mailer, clock):
    app = create_app(settings, db=db, mailer=mailer, clock=clock)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def accounts(settings, db, mailer, clock):
    return AccountService(
        UserRepository(db), PasswordHasher(rounds=4), TokenIssuer(settings), mailer, settings, clock
    )


@pytest.fixture
def carts(db, clock):
    return CartService(CartRepository(db), ProductRepository(db), clock)


@pytest.fixture
def make_user(client):
    def register(email="jane@example.com", name="Jane Doe", password=PASSWORD):
        response = client.post(
            "/api/v1/user/register-self", json={"name": name, "email": email, "password": password}
        )
        assert response.status_code == 201, response.text
        return response.json()

    return register


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {user['token']}"}


@pytest.fixture
def admin_headers(make_user, db):
    admin = make_user(email="admin@example.com", name="Ada Admin")
    db["user"].update_one({"email": "admin@example.com"}, {"$set": {"role": "admin"}})
    return {"Authorization": f"Bearer {admin['token']}"}


@pytest.fixture
def products(db):
    red_m = str(ObjectId())
    blue_l = str(ObjectId())
    docs = {
        "tee": {
            "name": "Classic Tee",
            "price": 10.0,
            "discount_price": 8.0,
            "category": "Apparel",
            "images": ["https://cdn.example.com/tee.jpg"],
            "stock": 50,
            "track_inventory": True,
            "is_active": True,
        },
        "mug": {
            "name": "Ceramic Mug",
            "price": 5.0,
            "discount_price": None,
            "category": "Home",
            "stock": 3,
            "track_inventory": True,
            "is_active": True,
        },
        "poster": {
            "name": "Retired Poster",
            "price": 12.0,
            "stock": 10,
            "is_active": False,
        },
        "hoodie": {
            "name": "Zip Hoodie",
            "price": 40.0,
            "category": "Apparel",
            "stock": 9,
            "track_inventory": True,
            "is_active": True,
            "variants": [
                {"variant_id": red_m, "sku": "HD-RED-M", "color": "red", "size": "M", "price": 42.0, "stock": 5},
                {
                    "variant_id": blue_l,
                    "sku": "HD-BLU-L",
                    "color": "blue",
                    "size": "L",
                    "price": 44.0,
                    "discount_price": 39.0,
                    "stock": 4,
                },
            ],
        },
    }
    ids = {}
    for key, doc in docs.items():
        ids[key] = str(db["product"].insert_one(doc).inserted_id)
    ids["hoodie_red_m"] = red_m
    ids["hoodie_blue_l"] = blue_l
    return ids
