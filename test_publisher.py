"""Tests for the AMQP dispatch publisher, using kombu's in-memory transport."""

import socket
import struct
import threading
import time
import uuid

import pytest
from amqp.serialization import dumps
from kombu import Connection

from analysis_scheduler.config import AmqpConfig
from analysis_scheduler.errors import DispatchError
from analysis_scheduler.models import ExecutionTrigger
from analysis_scheduler.publisher import DispatchPublisher


@pytest.fixture
def queue_name():
    # The memory transport is shared by the whole process
    return f"api_request_{uuid.uuid4().hex}"


@pytest.fixture
def trigger():
    return ExecutionTrigger(
        analysis_id='E1',
        project_id='proj-1',
        organization_id='org-1',
        integration_id=None,
        config={'js-sbom': {'branch': 'main'}},
    )


def _get_message(queue_name):
    with Connection('memory://') as conn:
        with conn.SimpleQueue(queue_name) as queue:
            message = queue.get(block=True, timeout=1)
            message.ack()
            return message


def test_publish_sends_json_message(queue_name, trigger):
    publisher = DispatchPublisher(AmqpConfig(queue=queue_name), url='memory://')

    publisher.publish(trigger, message_id='A:2026-10-19T11:55:00')
    # Closing a memory channel empties its queues, so read first
    message = _get_message(queue_name)
    publisher.close()

    assert message.content_type == 'application/json'
    assert message.payload == {
        'analysis_id': 'E1',
        'project_id': 'proj-1',
        'integration_id': None,
        'organization_id': 'org-1',
        'config': {'js-sbom': {'branch': 'main'}},
    }
    assert message.properties.get('message_id') == 'A:2026-10-19T11:55:00'


def test_publish_reuses_connection(queue_name, trigger):
    publisher = DispatchPublisher(AmqpConfig(queue=queue_name), url='memory://')

    publisher.publish(trigger)
    connection = publisher.connection
    publisher.publish(trigger)

    assert publisher.connection is connection
    publisher.close()
    assert publisher.connection is None


def test_publish_unreachable_broker(trigger):
    config = AmqpConfig(host='127.0.0.1', port='1', connect_timeout=0.5)
    publisher = DispatchPublisher(config)

    with pytest.raises(DispatchError):
        publisher.publish(trigger)

    assert publisher.connection is None


def test_queue_is_declared_durable():
    publisher = DispatchPublisher(AmqpConfig(queue='api_request'))

    assert publisher.queue.name == 'api_request'
    assert publisher.queue.durable is True
    assert publisher.queue.routing_key == 'api_request'


def _method_frame(channel, class_id, method_id, fmt=None, args=()):
    payload = struct.pack('>HH', class_id, method_id)
    if fmt:
        payload += dumps(fmt, args)
    return struct.pack('>BHI', 1, channel, len(payload)) + payload + b'\xce'


def _read_method(conn):
    header = b''
    while len(header) < 7:
        chunk = conn.recv(7 - len(header))
        if not chunk:
            return None
        header += chunk
    frame_type, channel, size = struct.unpack('>BHI', header)
    body = b''
    while len(body) < size + 1:
        chunk = conn.recv(size + 1 - len(body))
        if not chunk:
            return None
        body += chunk
    if frame_type != 1:
        return channel, None, None
    class_id, method_id = struct.unpack('>HH', body[:4])
    return channel, class_id, method_id


def _serve_without_declare_ok(server, stop):
    """Complete the AMQP handshake, then never answer queue.declare."""
    try:
        conn, _ = server.accept()
        conn.settimeout(5)
        with conn:
            conn.recv(8)  # protocol header
            conn.sendall(_method_frame(0, 10, 10, 'ooFSS', (0, 9, {}, 'PLAIN AMQPLAIN', 'en_US')))
            while not stop.is_set():
                frame = _read_method(conn)
                if frame is None:
                    return
                channel, class_id, method_id = frame
                if (class_id, method_id) == (10, 11):  # start-ok
                    conn.sendall(_method_frame(0, 10, 30, 'BlB', (2047, 131072, 0)))
                elif (class_id, method_id) == (10, 40):  # open
                    conn.sendall(_method_frame(0, 10, 41, 's', ('',)))
                elif (class_id, method_id) == (20, 10):  # channel.open
                    conn.sendall(_method_frame(channel, 20, 11, 'S', ('',)))
                elif (class_id, method_id) == (20, 40):  # channel.close
                    conn.sendall(_method_frame(channel, 20, 41))
                elif (class_id, method_id) == (10, 50):  # connection.close
                    conn.sendall(_method_frame(0, 10, 51))
                    return
    except OSError:
        return


@pytest.fixture
def silent_broker():
    server = socket.socket()
    server.bind(('127.0.0.1', 0))
    server.listen(1)
    server.settimeout(5)
    stop = threading.Event()
    thread = threading.Thread(target=_serve_without_declare_ok, args=(server, stop), daemon=True)
    thread.start()
    yield server.getsockname()[1]
    stop.set()
    server.close()


def test_publish_times_out_when_broker_stops_answering(silent_broker, trigger):
    config = AmqpConfig(host='127.0.0.1', port=str(silent_broker), connect_timeout=1, io_timeout=0.5)
    publisher = DispatchPublisher(config)
    outcome = {}

    def run():
        started = time.monotonic()
        try:
            publisher.publish(trigger)
            outcome['error'] = None
        except DispatchError as e:
            outcome['error'] = e
        outcome['elapsed'] = time.monotonic() - started

    worker = threading.Thread(target=run, daemon=True)
    worker.start()
    worker.join(10)

    assert not worker.is_alive()
    assert isinstance(outcome['error'], DispatchError)
    assert outcome['elapsed'] < 10
    assert publisher.connection is None


def test_connection_carries_socket_timeouts():
    publisher = DispatchPublisher(AmqpConfig(connect_timeout=3, io_timeout=7))

    connection = publisher._new_connection()

    assert connection.connect_timeout == 3
    assert connection.transport_options == {'read_timeout': 7, 'write_timeout': 7}
