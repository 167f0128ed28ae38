# stringing_tracker/main.py

from fastapi import FastAPI, Depends, HTTPException, Request, Response, WebSocket, status
from fastapi.responses import JSONResponse
from sqlmodel import Session, select
from typing import Annotated
from contextlib import asynccontextmanager
import asyncio
import logging
from stringing_tracker import settings
from stringing_tracker.access import (
    Action, Collection, authorize, customer_guard, is_allowed,
    order_guard, order_owner, payment_guard,
)
from stringing_tracker.db import create_db_and_tables, get_session
from stringing_tracker.events import create_kafka_topic, start_producer
from stringing_tracker.live import broadcaster
from stringing_tracker.models import (
    Customer, CustomerCreate, CustomerUpdate,
    Orders, OrderCreate, OrderRead, OrderUpdate, OrderStatus, OrderStatusUpdate, OrderProgress,
    Payment, PaymentCreate, PaymentStatusUpdate,
    NotificationChannel, NotificationLog, Principal,
    StatusUpdateOutcome, StatusUpdateResult, progress_for, utcnow,
)
from stringing_tracker.notifications import NotificationDispatcher, get_dispatcher, in_app_feed
from stringing_tracker.orders import update_order_status
from stringing_tracker.utils import (
    decode_principal,
    get_current_provider,
    get_current_user,
    verify_service_key,
)


# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


OUTCOME_HTTP_STATUS = {
    StatusUpdateOutcome.UPDATED: status.HTTP_200_OK,
    StatusUpdateOutcome.NOTIFY_FAILED: status.HTTP_200_OK,
    StatusUpdateOutcome.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    StatusUpdateOutcome.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    StatusUpdateOutcome.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    StatusUpdateOutcome.WRITE_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan event to manage application startup and shutdown.
    """
    create_db_and_tables()
    logger.info("Database created and tables ensured.")

    dispatcher = get_dispatcher()
    event_channel = dispatcher.channel(NotificationChannel.EVENT)
    producer = None
    if settings.KAFKA_ENABLED:
        await create_kafka_topic(settings.ORDER_EVENTS_TOPIC)
        producer = await start_producer()
        if event_channel is not None:
            event_channel.producer = producer

    try:
        yield
    finally:
        if producer is not None:
            if event_channel is not None:
                event_channel.producer = None
            await producer.stop()
            logger.info("Kafka producer stopped.")


app = FastAPI(lifespan=lifespan, title="Stringing Order Tracker", version="1.0.0")


def find_customer_for(session: Session, principal: Principal) -> Customer|None:
    return session.exec(select(Customer).where(Customer.auth_subject_id == principal.subject)).first()


@app.get("/")
def root():
    return {"status": "ok", "service": "stringing-tracker"}


# -------------------- Customers --------------------

@app.post("/customers", response_model=Customer, status_code=201)
def register_customer(
    customer_create: CustomerCreate,
    principal: Annotated[Principal, Depends(get_current_user)],
    session: Annotated[Session, Depends(get_session)],
):
    """
    Create the customer profile of the authenticated subject.
    """
    if find_customer_for(session, principal):
        raise HTTPException(status_code=409, detail="Customer profile already exists.")

    customer = Customer(**customer_create.model_dump(), auth_subject_id=principal.subject)
    session.add(customer)
    session.commit()
    session.refresh(customer)
    logger.info(f"Customer {customer.id} registered for subject {principal.subject}.")
    return customer


@app.get("/customers/me", response_model=Customer)
def get_my_customer(
    principal: Annotated[Principal, Depends(get_current_user)],
    session: Annotated[Session, Depends(get_session)],
):
    customer = find_customer_for(session, principal)
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


@app.get("/customers/{customer_id}", response_model=Customer)
def get_customer(customer: Annotated[Customer, Depends(customer_guard(Action.READ))]):
    return customer


@app.patch("/customers/{customer_id}", response_model=Customer)
def update_customer(
    customer_update: CustomerUpdate,
    customer: Annotated[Customer, Depends(customer_guard(Action.WRITE))],
    session: Annotated[Session, Depends(get_session)],
):
    for key, value in customer_update.model_dump(exclude_unset=True).items():
        setattr(customer, key, value)
    session.add(customer)
    session.commit()
    session.refresh(customer)
    logger.info(f"Customer {customer.id} updated.")
    return customer


# -------------------- Orders --------------------

@app.post("/orders", response_model=OrderRead, status_code=201)
async def create_order(
    order: OrderCreate,
    principal: Annotated[Principal, Depends(get_current_user)],
    session: Annotated[Session, Depends(get_session)],
    dispatcher: Annotated[NotificationDispatcher, Depends(get_dispatcher)],
):
    """
    Order intake: a customer places a stringing order on their own profile.
    """
    customer = session.get(Customer, order.customer_id)
    if not customer:
        raise HTTPException(status_code=400, detail="Customer not found")
    authorize(principal, Collection.ORDERS, Action.WRITE, customer.auth_subject_id)

    order_db = Orders(**order.model_dump(), status=OrderStatus.PENDING)
    session.add(order_db)
    session.commit()
    session.refresh(order_db)
    logger.info(f"Order ID {order_db.id} created for customer {customer.id}.")

    try:
        await dispatcher.dispatch(session, order_db)
    except Exception as e:
        session.rollback()
        logger.error(f"Order ID {order_db.id} created but confirmation could not be sent: {e}")

    return order_db


@app.get("/orders", response_model=list[OrderRead])
def get_orders(
    session: Annotated[Session, Depends(get_session)],
    provider: Annotated[Principal, Depends(get_current_provider)],
    order_status: OrderStatus|None = None,
):
    statement = select(Orders)
    if order_status is not None:
        statement = statement.where(Orders.status == order_status)
    return session.exec(statement.order_by(Orders.created_at)).all()


@app.get("/orders/me", response_model=list[OrderRead])
def get_my_orders(
    principal: Annotated[Principal, Depends(get_current_user)],
    session: Annotated[Session, Depends(get_session)],
):
    """
    Retrieve the orders of the currently authenticated customer.
    """
    customer = find_customer_for(session, principal)
    if not customer:
        return []
    return session.exec(
        select(Orders).where(Orders.customer_id == customer.id).order_by(Orders.created_at)
    ).all()


@app.get("/orders/{order_id}", response_model=OrderRead)
def get_order(order: Annotated[Orders, Depends(order_guard(Action.READ))]):
    return order


@app.patch("/orders/{order_id}", response_model=OrderRead)
def update_order(
    updated_order: OrderUpdate,
    order: Annotated[Orders, Depends(order_guard(Action.WRITE))],
    session: Annotated[Session, Depends(get_session)],
):
    order_data = updated_order.model_dump(exclude_unset=True)
    logger.info(f"Fields to update for Order ID {order.id}: {order_data}")
    for key, value in order_data.items():
        setattr(order, key, value)
    order.updated_at = utcnow()
    session.add(order)
    session.commit()
    session.refresh(order)
    return order


@app.patch("/orders/{order_id}/status", response_model=StatusUpdateResult)
async def change_order_status(
    order_id: str,
    status_update: OrderStatusUpdate,
    response: Response,
    principal: Annotated[Principal, Depends(get_current_user)],
    session: Annotated[Session, Depends(get_session)],
    dispatcher: Annotated[NotificationDispatcher, Depends(get_dispatcher)],
):
    result = await update_order_status(session, order_id, status_update.status, principal, dispatcher)
    response.status_code = OUTCOME_HTTP_STATUS[result.outcome]
    return result


@app.get("/orders/{order_id}/progress", response_model=OrderProgress)
def get_order_progress(order: Annotated[Orders, Depends(order_guard(Action.READ))]):
    return progress_for(order)


@app.get("/orders/{order_id}/payments", response_model=list[Payment])
def get_order_payments(
    order: Annotated[Orders, Depends(order_guard(Action.READ))],
    session: Annotated[Session, Depends(get_session)],
):
    return session.exec(
        select(Payment).where(Payment.order_id == order.id).order_by(Payment.paid_at)
    ).all()


async def wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@app.websocket("/orders/{order_id}/live")
async def order_live(
    websocket: WebSocket,
    order_id: str,
    session: Annotated[Session, Depends(get_session)],
    token: str|None = None,
):
    """
    Push the order's progress on connect and again after every status change.
    """
    try:
        principal = decode_principal(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    order = session.get(Orders, order_id)
    if not order or not is_allowed(principal, Collection.ORDERS, Action.READ, order_owner(session, order)):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    snapshot = progress_for(order).model_dump(mode="json")
    session.close()

    await websocket.accept()
    queue = broadcaster.subscribe(order_id)
    disconnected = asyncio.ensure_future(wait_for_disconnect(websocket))
    try:
        await websocket.send_json(snapshot)
        while True:
            next_message = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({next_message, disconnected}, return_when=asyncio.FIRST_COMPLETED)
            if disconnected in done:
                next_message.cancel()
                break
            await websocket.send_json(next_message.result())
    finally:
        disconnected.cancel()
        broadcaster.unsubscribe(order_id, queue)


# -------------------- Payments --------------------

@app.get("/payments/{payment_id}", response_model=Payment)
def get_payment(payment: Annotated[Payment, Depends(payment_guard(Action.READ))]):
    return payment


@app.post("/payments", status_code=201)
def create_payment(principal: Annotated[Principal, Depends(get_current_user)]):
    """Clients can never write payments; they are recorded through /internal/payments."""
    authorize(principal, Collection.PAYMENTS, Action.WRITE)


@app.post("/internal/payments", response_model=Payment, status_code=201, dependencies=[Depends(verify_service_key)])
def record_payment(
    payment_create: PaymentCreate,
    session: Annotated[Session, Depends(get_session)],
):
    order = session.get(Orders, payment_create.order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    payment = Payment(**payment_create.model_dump(), customer_id=order.customer_id)
    session.add(payment)
    session.commit()
    session.refresh(payment)
    logger.info(f"Payment {payment.id} recorded for Order ID {order.id}: {payment.amount} ({payment.status.value}).")
    return payment


@app.patch("/internal/payments/{payment_id}", response_model=Payment, dependencies=[Depends(verify_service_key)])
def update_payment_status(
    payment_id: str,
    payment_update: PaymentStatusUpdate,
    session: Annotated[Session, Depends(get_session)],
):
    payment = session.get(Payment, payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    payment.status = payment_update.status
    session.add(payment)
    session.commit()
    session.refresh(payment)
    logger.info(f"Payment {payment.id} marked as {payment.status.value}.")
    return payment


# -------------------- Notifications --------------------

@app.get("/notifications/me", response_model=list[NotificationLog])
def get_my_notifications(
    principal: Annotated[Principal, Depends(get_current_user)],
    session: Annotated[Session, Depends(get_session)],
):
    customer = find_customer_for(session, principal)
    if not customer:
        return []
    return in_app_feed(session, customer.id)


@app.get("/notifications", response_model=list[NotificationLog])
def get_notifications(
    session: Annotated[Session, Depends(get_session)],
    provider: Annotated[Principal, Depends(get_current_provider)],
):
    """
    Retrieves all notification logs, including failed and skipped attempts.
    """
    return session.exec(select(NotificationLog).order_by(NotificationLog.timestamp)).all()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Catches all unhandled exceptions and returns a 500 Internal Server Error.
    """
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )
