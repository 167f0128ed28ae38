# tests/test_access.py

import pytest
from fastapi import HTTPException
from stringing_tracker.access import Action, Collection, authorize, is_allowed
from stringing_tracker.models import Principal, Role
from tests.helpers import ALICE, BOB, PROVIDER

alice = Principal(subject=ALICE, role=Role.CUSTOMER)
bob = Principal(subject=BOB, role=Role.CUSTOMER)
provider = Principal(subject=PROVIDER, role=Role.PROVIDER)


def test_customer_record_only_for_matching_subject():
    assert is_allowed(alice, Collection.CUSTOMERS, Action.READ, ALICE)
    assert is_allowed(alice, Collection.CUSTOMERS, Action.WRITE, ALICE)
    assert not is_allowed(bob, Collection.CUSTOMERS, Action.READ, ALICE)
    assert not is_allowed(provider, Collection.CUSTOMERS, Action.READ, ALICE)


def test_missing_owner_is_never_matched():
    assert not is_allowed(alice, Collection.CUSTOMERS, Action.READ, None)
    assert not is_allowed(alice, Collection.ORDERS, Action.READ, None)


def test_orders_readable_by_owner_and_provider():
    assert is_allowed(alice, Collection.ORDERS, Action.READ, ALICE)
    assert is_allowed(provider, Collection.ORDERS, Action.READ, ALICE)
    assert not is_allowed(bob, Collection.ORDERS, Action.READ, ALICE)


def test_order_status_is_provider_only():
    assert is_allowed(provider, Collection.ORDERS, Action.STATUS, ALICE)
    assert not is_allowed(alice, Collection.ORDERS, Action.STATUS, ALICE)


@pytest.mark.parametrize("principal", [alice, bob, provider])
def test_payment_write_denied_for_every_client(principal):
    assert not is_allowed(principal, Collection.PAYMENTS, Action.WRITE, principal.subject)
    with pytest.raises(HTTPException) as exc_info:
        authorize(principal, Collection.PAYMENTS, Action.WRITE, principal.subject)
    assert exc_info.value.status_code == 403


def test_payments_readable_by_owner_and_provider():
    assert is_allowed(alice, Collection.PAYMENTS, Action.READ, ALICE)
    assert is_allowed(provider, Collection.PAYMENTS, Action.READ, ALICE)
    assert not is_allowed(bob, Collection.PAYMENTS, Action.READ, ALICE)


def test_unlisted_rule_is_denied():
    assert not is_allowed(provider, Collection.CUSTOMERS, Action.STATUS, ALICE)
