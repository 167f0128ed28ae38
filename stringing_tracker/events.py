# stringing_tracker/events.py

# OrderStatusEvent is built from a descriptor at import time:
#
#   enum OrderStatus { PENDING = 0; IN_PROGRESS = 1; ... READY_FOR_PICKUP = 5; }
#   message OrderStatusEvent {
#       string order_id = 1;
#       string customer_id = 2;
#       OrderStatus status = 3;
#       int32 percent_complete = 4;
#       double timestamp = 5;
#   }

import asyncio
import logging
from aiokafka import AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import (
    KafkaConnectionError,
    TopicAlreadyExistsError,
    NotControllerError,
    LeaderNotAvailableError,
)
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from stringing_tracker import settings
from stringing_tracker.models import Orders, OrderStatus, STATUS_SEQUENCE, percent_complete, utcnow

logger = logging.getLogger(__name__)

PROTO_PACKAGE = "stringing"


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    field = descriptor_pb2.FieldDescriptorProto
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="stringing/order_events.proto",
        package=PROTO_PACKAGE,
        syntax="proto3",
    )

    status_enum = file_proto.enum_type.add(name="OrderStatus")
    for number, order_status in enumerate(STATUS_SEQUENCE):
        status_enum.value.add(name=order_status.name, number=number)

    event = file_proto.message_type.add(name="OrderStatusEvent")
    event.field.add(name="order_id", number=1, type=field.TYPE_STRING, label=field.LABEL_OPTIONAL)
    event.field.add(name="customer_id", number=2, type=field.TYPE_STRING, label=field.LABEL_OPTIONAL)
    event.field.add(
        name="status", number=3, type=field.TYPE_ENUM, label=field.LABEL_OPTIONAL,
        type_name=f".{PROTO_PACKAGE}.OrderStatus",
    )
    event.field.add(name="percent_complete", number=4, type=field.TYPE_INT32, label=field.LABEL_OPTIONAL)
    event.field.add(name="timestamp", number=5, type=field.TYPE_DOUBLE, label=field.LABEL_OPTIONAL)
    return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file_descriptor().SerializeToString())

ProtobufOrderStatus = _pool.FindEnumTypeByName(f"{PROTO_PACKAGE}.OrderStatus")
OrderStatusEvent = message_factory.GetMessageClass(
    _pool.FindMessageTypeByName(f"{PROTO_PACKAGE}.OrderStatusEvent")
)


def map_python_to_protobuf_order_status(python_status: OrderStatus) -> int:
    return ProtobufOrderStatus.values_by_name[python_status.name].number


def build_order_status_event(order: Orders) -> bytes:
    event = OrderStatusEvent(
        order_id=order.id,
        customer_id=order.customer_id,
        status=map_python_to_protobuf_order_status(order.status),
        percent_complete=percent_complete(order.status),
        timestamp=utcnow().timestamp(),
    )
    return event.SerializeToString()


async def create_kafka_topic(
    topic_name: str,
    num_partitions: int = 1,
    replication_factor: int = 1,
    bootstrap_servers: str = settings.KAFKA_BOOTSTRAP_SERVERS,
    max_retries: int = 5,
    retry_interval: int = 10
):
    """
    Creates a Kafka topic, retrying on transient broker errors.

    Raises:
        Exception: If the topic cannot be created after max_retries.
    """
    admin_client = AIOKafkaAdminClient(bootstrap_servers=bootstrap_servers)
    retries = 0

    try:
        await admin_client.start()
        while retries < max_retries:
            try:
                topic_list = [
                    NewTopic(name=topic_name, num_partitions=num_partitions, replication_factor=replication_factor)
                ]
                await admin_client.create_topics(new_topics=topic_list, validate_only=False)
                logger.info(f"Topic '{topic_name}' created successfully.")
                break
            except TopicAlreadyExistsError:
                logger.info(f"Topic '{topic_name}' already exists.")
                break
            except (NotControllerError, LeaderNotAvailableError, KafkaConnectionError) as e:
                retries += 1
                logger.warning(f"Transient error ({e}), retrying {retries}/{max_retries} after {retry_interval} seconds...")
                await asyncio.sleep(retry_interval)
        else:
            raise Exception(f"Failed to create Kafka topic '{topic_name}' after {max_retries} retries.")
    finally:
        await admin_client.close()


async def start_producer() -> AIOKafkaProducer:
    producer = AIOKafkaProducer(bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS)
    await producer.start()
    logger.info("Kafka producer started.")
    return producer
