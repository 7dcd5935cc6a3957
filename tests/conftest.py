import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

import addresses
import main
import orders
from database import create_document, ensure_indexes, to_object_id
from schemas import DeliveryAgent, Product, SellerInfo, User

_counter = itertools.count(1)

HOME = {
    "name": "Asha Rao",
    "type": "home",
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
    "phone": "9876543210",
}

WORK = {
    "name": "Asha Rao",
    "type": "work",
    "street": "Tech Park, Outer Ring Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560103",
    "phone": "9876543210",
}


@pytest.fixture
def db():
    database = mongomock.MongoClient()["marketplace_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    main.app.dependency_overrides[main.get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def make_user(db, role="customer", name=None, with_address=False):
    n = next(_counter)
    user = User(
        name=name or f"{role.capitalize()} {n}",
        email=f"{role}{n}@example.com",
        password_hash=main.hash_password("secret123"),
        role=role,
        seller_info=SellerInfo(business_name=f"Shop {n}", gst_number=f"GST{n}") if role == "seller" else None,
    )
    user_id = create_document(db, "user", user)
    if with_address:
        addresses.add(db, user_id, HOME)
    return main.public_user(db["user"].find_one({"_id": to_object_id(user_id)}))


def make_product(db, seller, stock=5, price=100.0, name=None):
    n = next(_counter)
    product = Product(
        name=name or f"Product {n}",
        description="Test product",
        price=price,
        category="Accessories",
        brand="Acme",
        images=[f"https://img.example.com/{n}.jpg"],
        stock=stock,
        sku=f"SKU-{n}",
        seller_id=seller["id"],
    )
    product_id = create_document(db, "product", product)
    return db["product"].find_one({"_id": to_object_id(product_id)})


def make_agent(db, verified=True, available=True):
    n = next(_counter)
    actor = make_user(db, role="delivery")
    agent = DeliveryAgent(
        user_id=actor["id"],
        vehicle_type="bike",
        vehicle_number=f"KA01AB{n:04d}",
        license_number=f"LIC{n}",
        aadhar_number=f"AAD{n}",
        area="Bengaluru",
        is_verified=verified,
        is_available=available,
    )
    agent_id = create_document(db, "deliveryagent", agent)
    return actor, db["deliveryagent"].find_one({"_id": to_object_id(agent_id)})


def stock_of(db, product):
    return db["product"].find_one({"_id": product["_id"]})["stock"]


def place(db, customer, *lines, **kwargs):
    items = [{"product_id": str(p["_id"]), "quantity": q} for p, q in lines]
    return orders.create_order(db, customer, items=items, **kwargs)


def auth(actor):
    token = main.create_token({"id": actor["id"], "email": actor["email"], "role": actor["role"]})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def shop(db):
    """A customer with a default address, a seller with one product and a verified agent."""
    customer = make_user(db, with_address=True)
    seller = make_user(db, role="seller")
    product = make_product(db, seller, stock=5, price=250.0)
    agent_actor, agent = make_agent(db)
    admin = make_user(db, role="admin")
    return {
        "customer": customer,
        "seller": seller,
        "product": product,
        "agent_actor": agent_actor,
        "agent": agent,
        "admin": admin,
    }


@pytest.fixture
def out_for_delivery(db, shop):
    """An order that has been accepted, shipped, assigned and picked up."""
    import delivery

    order = place(db, shop["customer"], (shop["product"], 2))
    oid = str(order["_id"])
    orders.accept_order(db, shop["seller"], oid)
    orders.ship_order(db, shop["seller"], oid, "TRK123")
    orders.assign_delivery(db, shop["seller"], oid, str(shop["agent"]["_id"]))
    delivery.start_delivery(db, shop["agent_actor"], oid)
    return oid
