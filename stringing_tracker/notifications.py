# stringing_tracker/notifications.py

import asyncio
import logging
import smtplib
import time
from email.mime.text import MIMEText
from aiokafka import AIOKafkaProducer
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, SQLModel, Session, select
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client
from stringing_tracker import settings
from stringing_tracker.events import build_order_status_event
from stringing_tracker.live import OrderStatusBroadcaster, broadcaster
from stringing_tracker.models import (
    Customer, NotificationChannel, NotificationLog, Orders, OrderStatus,
    STATUS_PROGRESS, progress_for, utcnow,
)

# Configure logging
logger = logging.getLogger(__name__)

SENT = "Sent"
SKIPPED = "Skipped"
FAILED = "Failed"


def send_email(to_email: str, subject: str, body: str, retries: int = 3, backoff: float = 1.0) -> bool:
    """
    Sends an email to the specified recipient.

    Args:
        to_email (str): Recipient's email address.
        subject (str): Email subject.
        body (str): Email body.
        retries (int): Attempts before giving up.
        backoff (float): Base delay in seconds, doubled after every failed attempt.

    Returns:
        bool: True if email sent successfully, False otherwise.
    """
    attempt = 0
    while attempt < retries:
        try:
            msg = MIMEText(body)
            msg['Subject'] = subject
            msg['From'] = settings.USER_EMAIL
            msg['To'] = to_email

            with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.VENDOR_TIMEOUT) as server:
                server.starttls()
                server.login(settings.USER_EMAIL, str(settings.USER_PASSWORD))
                server.send_message(msg)

            logger.info(f"Email sent to {to_email}")
            return True
        except Exception as e:
            attempt += 1
            logger.error(f"Failed to send email to {to_email}: {e}")
            if attempt < retries:
                time.sleep(backoff * 2 ** (attempt - 1))  # Exponential backoff
    return False


def send_sms(to_number: str, message: str, retries: int = 3, backoff: float = 1.0) -> bool:
    """
    Sends an SMS to the specified phone number through Twilio.

    Args:
        to_number (str): Recipient's phone number.
        message (str): SMS message body.
        retries (int): Attempts before giving up.
        backoff (float): Base delay in seconds, doubled after every failed attempt.

    Returns:
        bool: True if SMS sent successfully, False otherwise.
    """
    attempt = 0
    while attempt < retries:
        try:
            client = Client(
                settings.TWILIO_ACCOUNT_SID,
                str(settings.TWILIO_AUTH_TOKEN),
                http_client=TwilioHttpClient(timeout=settings.VENDOR_TIMEOUT),
            )
            client.messages.create(
                body=message,
                from_=settings.TWILIO_NUMBER,
                to=to_number
            )
            logger.info(f"SMS sent to {to_number}")
            return True
        except Exception as e:
            attempt += 1
            logger.error(f"Failed to send SMS to {to_number}: {e}")
            if attempt < retries:
                time.sleep(backoff * 2 ** (attempt - 1))  # Exponential backoff
    return False


def compose_status_message(order: Orders) -> tuple[str, str]:
    """Subject and body telling the customer where their order is."""
    label = STATUS_PROGRESS[order.status][1]
    subject = f"Your racket order {order.id}: {label}"
    if order.status == OrderStatus.READY_FOR_PICKUP:
        body = (
            f"Dear Customer,\n\nYour {order.racket} is strung with {order.string_type} at {order.tension} "
            f"and ready for pickup. Thank you for stringing with us!"
        )
    elif order.status == OrderStatus.COMPLETED:
        body = f"Dear Customer,\n\nStringing on your {order.racket} is complete. We will let you know when it is ready for pickup."
    elif order.status == OrderStatus.PENDING:
        body = f"Dear Customer,\n\nWe have received your order #{order.id} for your {order.racket}."
    else:
        body = f"Dear Customer,\n\nYour order #{order.id} is now at the '{label}' stage."
    return subject, body


class StatusNotice(SQLModel):
    order_id: str
    customer_id: str
    status: OrderStatus
    subject: str
    body: str

class ChannelResult(SQLModel):
    channel: NotificationChannel
    recipient: str
    status: str
    error: str|None = None

class DispatchReport(SQLModel):
    order_id: str
    status: OrderStatus
    results: list[ChannelResult] = Field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return all(result.status != FAILED for result in self.results)

    def failed_channels(self) -> list[NotificationChannel]:
        return [result.channel for result in self.results if result.status == FAILED]


# -------------------- Channels --------------------

class PushChannel:
    """Browser push to live subscribers of the order."""
    channel = NotificationChannel.PUSH

    def __init__(self, live: OrderStatusBroadcaster = broadcaster):
        self.live = live

    async def deliver(self, order: Orders, customer: Customer|None, notice: StatusNotice) -> ChannelResult:
        reached = self.live.publish(order.id, progress_for(order).model_dump(mode="json"))
        return ChannelResult(
            channel=self.channel,
            recipient=f"{reached} live subscriber(s)",
            status=SENT if reached else SKIPPED,
        )


class InAppChannel:
    """The logged row itself is the customer's in-app feed entry."""
    channel = NotificationChannel.IN_APP

    async def deliver(self, order: Orders, customer: Customer|None, notice: StatusNotice) -> ChannelResult:
        return ChannelResult(channel=self.channel, recipient=order.customer_id, status=SENT)


class EmailChannel:
    channel = NotificationChannel.EMAIL

    def __init__(self, enabled: bool = settings.EMAIL_ENABLED, retries: int = settings.NOTIFY_RETRIES):
        self.enabled = enabled
        self.retries = retries

    async def deliver(self, order: Orders, customer: Customer|None, notice: StatusNotice) -> ChannelResult:
        if not self.enabled or customer is None:
            return ChannelResult(channel=self.channel, recipient=customer.email if customer else "", status=SKIPPED)
        sent = await asyncio.to_thread(send_email, customer.email, notice.subject, notice.body, self.retries)
        return ChannelResult(channel=self.channel, recipient=customer.email, status=SENT if sent else FAILED)


class SmsChannel:
    channel = NotificationChannel.SMS

    def __init__(self, enabled: bool = settings.SMS_ENABLED, retries: int = settings.NOTIFY_RETRIES):
        self.enabled = enabled
        self.retries = retries

    async def deliver(self, order: Orders, customer: Customer|None, notice: StatusNotice) -> ChannelResult:
        if not self.enabled or customer is None:
            return ChannelResult(channel=self.channel, recipient=customer.phone if customer else "", status=SKIPPED)
        sent = await asyncio.to_thread(send_sms, customer.phone, notice.body, self.retries)
        return ChannelResult(channel=self.channel, recipient=customer.phone, status=SENT if sent else FAILED)


class EventChannel:
    """Publishes an OrderStatusEvent to Kafka once a producer has been attached."""
    channel = NotificationChannel.EVENT

    def __init__(self, producer: AIOKafkaProducer|None = None, topic: str = settings.ORDER_EVENTS_TOPIC):
        self.producer = producer
        self.topic = topic

    async def deliver(self, order: Orders, customer: Customer|None, notice: StatusNotice) -> ChannelResult:
        if self.producer is None:
            return ChannelResult(channel=self.channel, recipient=self.topic, status=SKIPPED)
        await self.producer.send_and_wait(self.topic, build_order_status_event(order))
        logger.info(f"Produced order status event for Order ID {order.id}.")
        return ChannelResult(channel=self.channel, recipient=self.topic, status=SENT)


# -------------------- Dispatcher --------------------

class NotificationDispatcher:
    """
    Best-effort fan-out of an order status change.

    Every channel is attempted independently; a failing or slow channel never
    stops the others and never raises out of ``dispatch``. A delivery that runs
    past ``timeout`` seconds counts as failed. Each attempt is recorded as a
    NotificationLog row.
    """

    def __init__(self, channels: list, timeout: float = settings.NOTIFY_TIMEOUT):
        self.channels = channels
        self.timeout = timeout

    def channel(self, kind: NotificationChannel):
        for channel in self.channels:
            if channel.channel == kind:
                return channel
        return None

    async def dispatch(self, session: Session, order: Orders) -> DispatchReport:
        customer = session.get(Customer, order.customer_id)
        if customer is None:
            logger.warning(f"Customer {order.customer_id} for Order ID {order.id} not found, contact channels skipped.")

        subject, body = compose_status_message(order)
        notice = StatusNotice(
            order_id=order.id,
            customer_id=order.customer_id,
            status=order.status,
            subject=subject,
            body=body,
        )

        report = DispatchReport(order_id=order.id, status=order.status)
        for channel in self.channels:
            try:
                result = await asyncio.wait_for(channel.deliver(order, customer, notice), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.error(f"{channel.channel.value} notification for Order ID {order.id} timed out after {self.timeout}s")
                result = ChannelResult(
                    channel=channel.channel, recipient="", status=FAILED, error=f"timed out after {self.timeout}s"
                )
            except Exception as e:
                logger.error(f"{channel.channel.value} notification for Order ID {order.id} failed: {e}")
                result = ChannelResult(channel=channel.channel, recipient="", status=FAILED, error=str(e))
            report.results.append(result)

        try:
            log_notifications(session, notice, report.results)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Notification log write for Order ID {order.id} failed, retrying in a new session: {e}")
            with Session(session.get_bind()) as log_session:
                log_notifications(log_session, notice, report.results)

        logger.info(
            f"Notifications dispatched for Order ID {order.id}: "
            + ", ".join(f"{r.channel.value}={r.status}" for r in report.results)
        )
        return report


def log_notifications(session: Session, notice: StatusNotice, results: list[ChannelResult]) -> None:
    """
    Records every channel attempt in the NotificationLog table.
    """
    for result in results:
        message = notice.subject + " " + notice.body
        if result.error:
            message += f" [error: {result.error}]"
        session.add(NotificationLog(
            order_id=notice.order_id,
            customer_id=notice.customer_id,
            channel=result.channel,
            recipient=result.recipient,
            message=message,
            status=result.status,
            timestamp=utcnow(),
        ))
    session.commit()


def in_app_feed(session: Session, customer_id: str) -> list[NotificationLog]:
    statement = (
        select(NotificationLog)
        .where(NotificationLog.customer_id == customer_id)
        .where(NotificationLog.channel == NotificationChannel.IN_APP)
        .order_by(NotificationLog.timestamp.desc())
    )
    return list(session.exec(statement).all())


def build_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher([
        InAppChannel(),
        PushChannel(),
        EmailChannel(),
        SmsChannel(),
        EventChannel(),
    ])


dispatcher = build_dispatcher()

def get_dispatcher() -> NotificationDispatcher:
    return dispatcher
