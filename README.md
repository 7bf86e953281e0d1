# moltransit

This package is the transit layer of a microservices broker. It moves packets between nodes. The packets are:

- requests and responses
- events
- discovery
- node info
- heartbeats
- ping/pong

The packets travel over a transport. Two transports are included:

- an in-process transport
- an AMQP (RabbitMQ) transport

## Installation

```
pip install moltransit
```

`pika` is installed along with the package. The AMQP transporter uses it.

## Modules

### `moltransit.transport`

- `Transport`: the abstract base class. It defines `connect()`, `disconnect()`, `subscribe(command, node_id, handler)` and `publish(command, node_id, message)`. It also has the attributes `prefix`, `node_id` and `serializer`.
  - `topic_name(command, node_id)` returns `prefix.command`. When `node_id` is given, it returns `prefix.command.node_id`.
- `JsonSerializer`: converts between payloads and compact JSON bytes.
  - `payload_to_bytes(payload)` turns a payload into bytes.
  - `bytes_to_payload(data)` turns bytes back into a payload.
  - Both methods raise `TransportError` on bad input.
- `TransportError`: the base error for transports.
- `NotConnectedError`: a subclass of `TransportError`.

### `moltransit.memory`

- `MemoryTransporter(memory=None, logger=None)` and `SharedMemory`.
  - Transporters that share one `SharedMemory` deliver messages to each other inside the same process.
  - Each handler runs in its own thread.
  - `disconnect()` removes only the subscriptions of that one transporter.

### `moltransit.amqp`

- `AmqpTransporter(options)` is configured with `AmqpOptions`. The options are:
  - `urls`: tried in turn when connecting.
  - `prefetch`: defaults to 1.
  - `queue_options` and `exchange_options`. The keys `durable`, `exclusive` and `autoDelete` become flags. All other keys become declaration arguments.
  - `consume_options`.
  - `auto_delete_queues`, `event_time_to_live` and `heartbeat_time_to_live`, given as `timedelta`. These become the queue arguments `x-expires` and `x-message-ttl`.
  - `disable_reconnect`.
  - `logger` and `serializer`.
- `merge_configs(base, user)` returns `base` with every value that is set in `user` laid over it.
- How topics map onto AMQP:
  - A node-specific topic becomes a queue of the same name.
  - A broadcast topic becomes a fanout exchange. Each node binds its own queue, `prefix.COMMAND.node_id`, to that exchange.
  - `REQ` messages are acknowledged after their handler returns.
- Connection behaviour:
  - `connect()` returns once the first connection is open.
  - With `disable_reconnect=True`, a failed attempt raises `TransportError`.
  - Otherwise the transporter retries every 5 seconds. After the connection drops, it subscribes again.
  - `publish()` raises `NotConnectedError` when there is no channel. Publish failures after that point are logged, not raised.
- `queue_options(command, balanced_queue)` and `exchange_options()` return the flags and arguments used for declarations.

### `moltransit.pubsub`

`PubSub(broker)` sits on top of a transport.

- Connection:
  - `connect()` creates the transport and subscribes to every packet type.
  - `disconnect()` broadcasts `DISCONNECT` and then closes the transport.
- Sending:
  - `emit(context)` sends an `EVENT` packet.
  - `request(context)` sends a `REQ` packet and returns a `concurrent.futures.Future`. The future fails with `RequestError` in three cases: on a timeout, when the target node disconnects, or when the response is an error.
  - `discover_node(node_id)` sends `DISCOVER`.
  - `discover_nodes()` broadcasts `DISCOVER` and then waits for neighbours. It returns `True` when neighbours answered.
  - `send_heartbeat()` and `send_ping()`.
- Incoming requests are passed to the broker. The result, or the exception raised, is sent back as a `RES` packet.
- Incoming packets are dropped when they carry the wrong protocol version or were sent by the local node.
- Neighbours:
  - `neighbours()` and `expected_neighbours()`.
  - The bus listeners `on_node_connected`, `on_node_disconnected`, `on_broker_started` and `on_service_added`.
- Helpers:
  - `resolve_namespace(namespace)` returns `MOL`, or `MOL-<namespace>` when a namespace is given.
  - `parse_params_type(value)` returns the params type as a string, or `"1"` when the value is missing.
  - `config_to_map(config)` returns the config summary sent in `INFO` packets.
  - `DataType` is the enum of packet data kinds.

The broker passed to `PubSub` is duck typed. It must provide the following:

- `config`, read with defaults:
  - `transporter`, `namespace`, `log_level`
  - `request_timeout`, `neighbours_check_timeout` and `wait_for_neighbours_interval`, in seconds
  - `dont_wait_for_neighbours`
  - `transporter_factory`
- `local_node`, with `id`, `export_as_map()` and `increase_sequence()`.
- `bus`, with `on`, `once` and `emit`.
- `instance_id`.
- `action_delegate(values)`.
- `handle_remote_event(values)`.

### Other modules

- `moltransit.util.random_string(size)` returns `size` random ASCII letters.
- `moltransit.version` provides `moleculer_version()`, `protocol_version()` and `runtime_version()`.

## Example: in-memory transport

```python
from moltransit.memory import MemoryTransporter, SharedMemory

shared = SharedMemory()
a = MemoryTransporter(shared, None)
b = MemoryTransporter(shared, None)
a.prefix = b.prefix = "MOL"

a.connect()
b.connect()

b.subscribe("EVENT", "node-b", lambda message: print("got", message))
a.publish("EVENT", "node-b", {"sender": "node-a", "ver": "4"})

a.disconnect()
b.disconnect()
```

## Example: AMQP transport

```python
from moltransit.amqp import AmqpOptions, AmqpTransporter

transporter = AmqpTransporter(AmqpOptions(urls=["amqp://localhost:5672/"]))
transporter.prefix = "MOL"
transporter.node_id = "node-a"
transporter.connect()
transporter.subscribe("INFO", "", print)
transporter.publish("INFO", "", {"sender": "node-a", "ver": "4"})
transporter.disconnect()
```

To run `PubSub` over AMQP, set the broker's `config.transporter_factory` to a callable that returns an `AmqpTransporter`.

## What is not included

`PubSub` chooses its transport as follows:

- If `transporter_factory` is set, it uses that factory.
- Otherwise it uses a `MemoryTransporter`.

There are no NATS, NATS Streaming or Kafka transporters. A `transporter` setting of `STAN`, or one containing `nats://` or `kafka://`, raises `UnsupportedTransporterError`.

The package also has no service broker, registry, action contexts or command-line tool. The broker that `PubSub` works with must be supplied by the caller.

## Running the tests

```
pip install -e ".[test]"
pytest
```