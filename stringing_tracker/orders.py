# stringing_tracker/orders.py

import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from stringing_tracker import settings
from stringing_tracker.access import Action, Collection, is_allowed, order_owner
from stringing_tracker.models import (
    Orders, OrderStatus, Principal, STATUS_SEQUENCE,
    StatusUpdateOutcome, StatusUpdateResult, utcnow,
)
from stringing_tracker.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


def is_forward_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return STATUS_SEQUENCE.index(new) >= STATUS_SEQUENCE.index(current)


async def update_order_status(
    session: Session,
    order_id: str,
    new_status: OrderStatus,
    actor: Principal,
    dispatcher: NotificationDispatcher,
    enforce_forward_only: bool|None = None,
) -> StatusUpdateResult:
    """
    Apply ``new_status`` to an order and notify its customer.

    The status is overwritten unconditionally unless forward-only enforcement is
    switched on. The write is committed before notifications go out; a failed
    notification does not undo the write and is reported as ``notify_failed``
    with ``success=True``.
    """
    if enforce_forward_only is None:
        enforce_forward_only = settings.ENFORCE_FORWARD_ONLY

    order = session.get(Orders, order_id)
    if not order:
        logger.info(f"Status update for unknown Order ID {order_id}.")
        return StatusUpdateResult(
            success=False,
            outcome=StatusUpdateOutcome.NOT_FOUND,
            message="Order not found",
            order_id=order_id,
        )

    if not is_allowed(actor, Collection.ORDERS, Action.STATUS, order_owner(session, order)):
        logger.warning(f"Subject {actor.subject} may not change status of Order ID {order_id}.")
        return StatusUpdateResult(
            success=False,
            outcome=StatusUpdateOutcome.UNAUTHORIZED,
            message="Not authorized to update this order",
            order_id=order_id,
            status=order.status,
        )

    if enforce_forward_only and not is_forward_transition(order.status, new_status):
        return StatusUpdateResult(
            success=False,
            outcome=StatusUpdateOutcome.INVALID_TRANSITION,
            message=f"Cannot move order from {order.status.value} back to {new_status.value}",
            order_id=order_id,
            status=order.status,
        )

    previous = order.status
    try:
        order.status = new_status
        order.updated_at = utcnow()
        session.add(order)
        session.commit()
        session.refresh(order)
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Database commit failed for Order ID {order_id}: {e}")
        return StatusUpdateResult(
            success=False,
            outcome=StatusUpdateOutcome.WRITE_FAILED,
            message="Failed to update order",
            order_id=order_id,
        )
    logger.info(f"Order ID {order_id} status updated from {previous.value} to {new_status.value}.")

    try:
        report = await dispatcher.dispatch(session, order)
        notified = report.delivered
        if not notified:
            logger.error(f"Order ID {order_id} updated but notification failed on {report.failed_channels()}.")
    except Exception as e:
        session.rollback()
        logger.error(f"Order ID {order_id} updated but notification dispatch raised: {e}")
        notified = False

    if not notified:
        return StatusUpdateResult(
            success=True,
            outcome=StatusUpdateOutcome.NOTIFY_FAILED,
            message="Order updated but the customer could not be notified",
            notified=False,
            order_id=order_id,
            status=new_status,
        )
    return StatusUpdateResult(
        success=True,
        outcome=StatusUpdateOutcome.UPDATED,
        message="Order status updated successfully",
        notified=True,
        order_id=order_id,
        status=new_status,
    )
