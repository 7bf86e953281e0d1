import logging
from datetime import timedelta

import pytest

from moltransit.amqp import (
    DEFAULT_CONFIG,
    AmqpOptions,
    AmqpTransporter,
    merge_configs,
)
from moltransit.transport import JsonSerializer, NotConnectedError, TransportError


def make(**kwargs):
    transporter = AmqpTransporter(AmqpOptions(**kwargs))
    transporter.prefix = "MOL"
    transporter.node_id = "node1"
    return transporter


def test_merge_keeps_defaults_for_empty_user_config():
    merged = merge_configs(DEFAULT_CONFIG, AmqpOptions())
    assert merged.prefetch == 1
    assert merged.auto_delete_queues is None
    assert merged.event_time_to_live is None
    assert merged.heartbeat_time_to_live is None
    assert merged.urls == []
    assert merged.disable_reconnect is False


def test_merge_applies_user_values():
    ttl = timedelta(milliseconds=5000)
    user = AmqpOptions(
        urls=["amqp://localhost:5672"],
        prefetch=4,
        auto_delete_queues=ttl,
        event_time_to_live=ttl,
        heartbeat_time_to_live=ttl,
        queue_options={"durable": True},
        exchange_options={"autoDelete": True},
        disable_reconnect=True,
    )
    merged = merge_configs(DEFAULT_CONFIG, user)
    assert merged.urls == ["amqp://localhost:5672"]
    assert merged.prefetch == 4
    assert merged.auto_delete_queues == ttl
    assert merged.event_time_to_live == ttl
    assert merged.heartbeat_time_to_live == ttl
    assert merged.queue_options == {"durable": True}
    assert merged.exchange_options == {"autoDelete": True}
    assert merged.disable_reconnect is True


def test_merge_treats_zero_as_unset():
    merged = merge_configs(
        DEFAULT_CONFIG, AmqpOptions(prefetch=0, auto_delete_queues=timedelta(0))
    )
    assert merged.prefetch == 1
    assert merged.auto_delete_queues is None


def test_merge_takes_disable_reconnect_from_user_always():
    base = AmqpOptions(prefetch=1, disable_reconnect=True)
    assert merge_configs(base, AmqpOptions()).disable_reconnect is False


def test_merge_does_not_change_base():
    merged = merge_configs(
        DEFAULT_CONFIG, AmqpOptions(prefetch=7, urls=["amqp://localhost"])
    )
    assert merged.prefetch == 7
    assert merged.urls == ["amqp://localhost"]
    assert DEFAULT_CONFIG.prefetch == 1
    assert DEFAULT_CONFIG.urls == []


def test_transporter_uses_given_logger_and_serializer():
    logger = logging.getLogger("amqp-test")
    serializer = JsonSerializer()
    transporter = AmqpTransporter(AmqpOptions(logger=logger, serializer=serializer))
    assert transporter.logger is logger
    assert transporter.serializer is serializer
    assert transporter.opts.prefetch == 1


def test_topic_name():
    transporter = make()
    assert transporter.topic_name("REQ", "node1") == "MOL.REQ.node1"
    assert transporter.topic_name("INFO", "") == "MOL.INFO"


def test_request_queue_expires():
    transporter = make(auto_delete_queues=timedelta(milliseconds=5000))
    options = transporter.queue_options("REQ", False)
    assert options.arguments == {"x-expires": 5000}
    assert options.auto_delete is False


def test_balanced_request_queue_does_not_expire():
    transporter = make(auto_delete_queues=timedelta(milliseconds=5000))
    assert transporter.queue_options("REQ", True).arguments == {}


def test_response_queue_expires_even_when_balanced():
    transporter = make(auto_delete_queues=timedelta(milliseconds=5000))
    assert transporter.queue_options("RES", True).arguments == {"x-expires": 5000}


@pytest.mark.parametrize("command", ["EVENT", "EVENTLB"])
def test_event_queue_expiry_and_ttl(command):
    transporter = make(
        auto_delete_queues=timedelta(milliseconds=5000),
        event_time_to_live=timedelta(milliseconds=250),
    )
    options = transporter.queue_options(command, False)
    assert options.arguments == {"x-expires": 5000, "x-message-ttl": 250}
    assert options.auto_delete is False


def test_heartbeat_queue_auto_deletes_with_ttl():
    transporter = make(heartbeat_time_to_live=timedelta(milliseconds=250))
    options = transporter.queue_options("HEARTBEAT", False)
    assert options.auto_delete is True
    assert options.arguments == {"x-message-ttl": 250}


@pytest.mark.parametrize("command", ["DISCOVER", "DISCONNECT", "INFO", "PING", "PONG"])
def test_internal_queues_auto_delete(command):
    transporter = make(auto_delete_queues=timedelta(milliseconds=5000))
    options = transporter.queue_options(command, False)
    assert options.auto_delete is True
    assert options.arguments == {}


def test_undefined_durations_add_no_arguments():
    transporter = make()
    for command in ("REQ", "RES", "EVENT", "HEARTBEAT"):
        assert transporter.queue_options(command, False).arguments == {}


def test_configured_queue_options_split_into_flags_and_arguments():
    transporter = make(
        queue_options={"exclusive": True, "durable": True, "x-max-length": 10}
    )
    options = transporter.queue_options("REQ", False)
    assert options.exclusive is True
    assert options.durable is True
    assert options.arguments == {"x-max-length": 10}


def test_queue_flag_must_be_bool():
    transporter = make(queue_options={"exclusive": "yes"})
    with pytest.raises(TypeError):
        transporter.queue_options("REQ", False)


def test_exchange_options_default():
    options = make().exchange_options()
    assert options.durable is False
    assert options.auto_delete is False
    assert options.arguments == {}


def test_exchange_options_split_into_flags_and_arguments():
    transporter = make(
        exchange_options={"durable": True, "autoDelete": True, "alternate-exchange": "alt"}
    )
    options = transporter.exchange_options()
    assert options.durable is True
    assert options.auto_delete is True
    assert options.arguments == {"alternate-exchange": "alt"}


def test_exchange_flag_must_be_bool():
    transporter = make(exchange_options={"durable": 1})
    with pytest.raises(TypeError):
        transporter.exchange_options()


def test_publish_without_connection_raises():
    transporter = make()
    with pytest.raises(NotConnectedError, match="No connection"):
        transporter.publish("REQ", "node1", {"sender": "node1"})


def test_publish_still_fails_after_subscribing_while_disconnected():
    transporter = make()
    transporter.subscribe("REQ", "node1", lambda payload: None)
    with pytest.raises(NotConnectedError):
        transporter.publish("REQ", "node1", {})


def test_connect_without_urls_raises():
    with pytest.raises(TransportError):
        make().connect()


def test_connect_fails_when_reconnect_disabled_and_broker_unreachable():
    transporter = make(urls=["amqp://127.0.0.1:1/"], disable_reconnect=True)
    with pytest.raises(TransportError, match="failed to connect"):
        transporter.connect()