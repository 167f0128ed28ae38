# stringing_tracker/access.py

from fastapi import Depends, HTTPException, status
from sqlmodel import Session
from typing import Annotated, Callable
from enum import Enum
import logging
from stringing_tracker.db import get_session
from stringing_tracker.models import Customer, Orders, Payment, Principal, Role
from stringing_tracker.utils import get_current_user

logger = logging.getLogger(__name__)


class Collection(str, Enum):
    CUSTOMERS = "customers"
    ORDERS = "orders"
    PAYMENTS = "payments"

class Action(str, Enum):
    READ = "read"
    WRITE = "write"
    STATUS = "status"


Rule = Callable[[Principal, str|None], bool]


def _owner(principal: Principal, owner_subject: str|None) -> bool:
    return owner_subject is not None and principal.subject == owner_subject

def _owner_or_provider(principal: Principal, owner_subject: str|None) -> bool:
    return principal.role == Role.PROVIDER or _owner(principal, owner_subject)

def _provider(principal: Principal, owner_subject: str|None) -> bool:
    return principal.role == Role.PROVIDER

def _deny(principal: Principal, owner_subject: str|None) -> bool:
    return False


POLICY: dict[tuple[Collection, Action], Rule] = {
    (Collection.CUSTOMERS, Action.READ): _owner,
    (Collection.CUSTOMERS, Action.WRITE): _owner,
    (Collection.ORDERS, Action.READ): _owner_or_provider,
    (Collection.ORDERS, Action.WRITE): _owner,
    (Collection.ORDERS, Action.STATUS): _provider,
    (Collection.PAYMENTS, Action.READ): _owner_or_provider,
    # Payments are recorded by trusted server-side callers only
    (Collection.PAYMENTS, Action.WRITE): _deny,
}


def is_allowed(principal: Principal, collection: Collection, action: Action, owner_subject: str|None) -> bool:
    rule = POLICY.get((collection, action), _deny)
    return rule(principal, owner_subject)


def authorize(principal: Principal, collection: Collection, action: Action, owner_subject: str|None = None) -> None:
    """Raise 403 unless the policy allows ``principal`` to perform ``action``."""
    if not is_allowed(principal, collection, action, owner_subject):
        logger.warning(
            f"Denied {action.value} on {collection.value} for subject {principal.subject} ({principal.role.value})"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Not authorized to {action.value} this record.",
        )


def order_owner(session: Session, order: Orders) -> str|None:
    customer = session.get(Customer, order.customer_id)
    return customer.auth_subject_id if customer else None

def payment_owner(session: Session, payment: Payment) -> str|None:
    customer = session.get(Customer, payment.customer_id)
    return customer.auth_subject_id if customer else None


def customer_guard(action: Action):
    def dependency(
        customer_id: str,
        principal: Annotated[Principal, Depends(get_current_user)],
        session: Annotated[Session, Depends(get_session)],
    ) -> Customer:
        customer = session.get(Customer, customer_id)
        if not customer:
            raise HTTPException(status_code=404, detail="Customer not found")
        authorize(principal, Collection.CUSTOMERS, action, customer.auth_subject_id)
        return customer
    return dependency


def order_guard(action: Action):
    def dependency(
        order_id: str,
        principal: Annotated[Principal, Depends(get_current_user)],
        session: Annotated[Session, Depends(get_session)],
    ) -> Orders:
        order = session.get(Orders, order_id)
        if not order:
            raise HTTPException(status_code=404, detail="Order not found")
        authorize(principal, Collection.ORDERS, action, order_owner(session, order))
        return order
    return dependency


def payment_guard(action: Action):
    def dependency(
        payment_id: str,
        principal: Annotated[Principal, Depends(get_current_user)],
        session: Annotated[Session, Depends(get_session)],
    ) -> Payment:
        payment = session.get(Payment, payment_id)
        if not payment:
            raise HTTPException(status_code=404, detail="Payment not found")
        authorize(principal, Collection.PAYMENTS, action, payment_owner(session, payment))
        return payment
    return dependency
