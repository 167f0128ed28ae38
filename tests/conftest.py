# tests/conftest.py

import os

# Set the TESTING environment variable to use the test database
os.environ["TESTING"] = "1"

import pytest
from sqlmodel import SQLModel, Session
from stringing_tracker.db import engine, get_session
from stringing_tracker.main import app
from stringing_tracker.models import Customer, Orders, OrderStatus
from tests.helpers import ALICE, BOB


# Fixture to create the test database and tables
@pytest.fixture(name="create_test_database")
def create_test_database_fixture():
    """
    Overrides the get_session dependency to use the test database session.
    Creates all tables before tests and drops them after tests.
    """
    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    # Setup: create tables in the test DB
    SQLModel.metadata.create_all(engine)
    yield
    # Teardown: drop tables after tests
    SQLModel.metadata.drop_all(engine)

    # Remove only the specific dependency override
    app.dependency_overrides.pop(get_session, None)


@pytest.fixture(name="seeded_order")
def seeded_order_fixture(create_test_database):
    """
    Customer C1 (owned by alice), customer C2 (owned by bob) and order O1 for C1
    sitting at quality_check.
    """
    with Session(engine) as session:
        session.add(Customer(id="C1", name="Alice Ace", email="alice@example.com",
                             phone="+15550000001", auth_subject_id=ALICE))
        session.add(Customer(id="C2", name="Bob Baseline", email="bob@example.com",
                             phone="+15550000002", auth_subject_id=BOB))
        session.add(Orders(id="O1", customer_id="C1", racket="Wilson Pro Staff 97",
                           string_type="Luxilon ALU Power", tension="52 lbs",
                           status=OrderStatus.QUALITY_CHECK))
        session.commit()
    return "O1"

