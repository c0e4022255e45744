import logging
import threading
import numpy as np
import pytest
from usblsim import communication as comm
from usblsim.communication import (MessageBus, TransponderNode, Transceiver,
                                   topicNames, getMsgStruct)
from usblsim.navigation import StaticProbe
from usblsim.transponder import CommandResponse


def test_topic_names(configFactory):
    cfg = configFactory(transponderID='1', transceiverID='transceiver_2')
    topics = topicNames(cfg.identity)
    assert topics == {
        'individual_ping':
            '/usbl/transponder_1/individual_interrogation_ping',
        'common_ping': '/usbl/common_interrogation_ping',
        'temperature': '/usbl/transponder_1/temperature',
        'command_request': '/usbl/transponder_1/command_request',
        'command_response': '/usbl/transceiver_transceiver_2/command_response',
        'global_position': '/usbl/transceiver_1/global_position',
    }


def test_message_structs():
    assert getMsgStruct('PING') is getMsgStruct('PING')
    assert getMsgStruct('ping').build({'command': 'x'}) \
        == getMsgStruct('INTERROGATION').build({'command': 'x'})
    assert getMsgStruct('temperature').build({'temperature': 1.0}) \
        == comm.writeTemperature(1.0)
    assert getMsgStruct('XXXX') is None


def test_messages_start_with_flag():
    assert comm.writePing()[:4] == b'PING'
    assert comm.writeTemperature(12.0)[:4] == b'TEMP'
    assert comm.writeCommandRequest(1, 'T1', '')[:4] == b'CMRQ'
    assert comm.writeCommandResponse(CommandResponse('a', 1, 2))[:4] == b'CMRS'
    assert comm.writeGlobalPosition(np.zeros(3))[:4] == b'GPOS'
    assert len(comm.writeTemperature(12.0)) == 12
    assert len(comm.writeGlobalPosition(np.zeros(3))) == 28


def test_message_contents():
    assert comm.readPing(comm.writePing('pong')) == 'pong'
    assert comm.readTemperature(comm.writeTemperature(-1.5)) == -1.5
    assert comm.readCommandRequest(
        comm.writeCommandRequest(5, 'T1', 'x')) == (5, 'T1', 'x')
    response = CommandResponse('hi from transponder_T1', 1, 3)
    assert comm.readCommandResponse(comm.writeCommandResponse(response)) \
        == response
    position = np.array([1.25, -2.5, 1e6])
    assert np.array_equal(
        comm.readGlobalPosition(comm.writeGlobalPosition(position)), position)


def test_parse_wrong_type_fails():
    with pytest.raises(Exception):
        comm.readTemperature(comm.writePing())


# MessageBus ------------------------------------------------------------------

def test_bus_delivers_in_order():
    bus = MessageBus()
    received = []
    bus.subscribe('/a', received.append)
    for i in range(50):
        bus.publish('/a', bytes([i]))
    bus.join()
    assert received == [bytes([i]) for i in range(50)]
    bus.close()


def test_bus_without_subscribers_drops():
    bus = MessageBus()
    assert bus.publish('/nobody', b'x') == 0
    bus.close()


def test_bus_subscriptions_are_independent():
    bus = MessageBus()
    gate = threading.Event()
    fast = []
    bus.subscribe('/slow', lambda msg: gate.wait(5.0))
    bus.subscribe('/fast', fast.append)
    bus.publish('/slow', b's')
    bus.publish('/fast', b'f')
    deadline = threading.Event()
    for _ in range(500):
        if (fast):
            break
        deadline.wait(0.01)
    assert fast == [b'f']
    gate.set()
    bus.close()


def test_bus_survives_callback_error(caplog):
    bus = MessageBus()
    received = []

    def callback(msg):
        if (msg == b'bad'):
            raise RuntimeError('boom')
        received.append(msg)

    bus.subscribe('/a', callback)
    with caplog.at_level(logging.ERROR, logger='comm'):
        bus.publish('/a', b'bad')
        bus.publish('/a', b'good')
        bus.join()
    assert received == [b'good']
    assert 'boom' in caplog.text
    bus.close()


def test_bus_unsubscribe():
    bus = MessageBus()
    received = []
    sub = bus.subscribe('/a', received.append)
    assert bus.topics() == ['/a']
    bus.unsubscribe(sub)
    assert bus.topics() == []
    assert bus.publish('/a', b'x') == 0
    assert received == []


# Node and transceiver --------------------------------------------------------

@pytest.fixture
def link(configFactory, sleep):
    cfg = configFactory(responseMode='worker')
    probe = StaticProbe([0.0, 0.0, 0.0], {'box': [1540.4, 0.0, 0.0]})
    bus = MessageBus()
    node = TransponderNode(bus, cfg, probe, sleep=sleep, clock=lambda: 0.0)
    node.start()
    transceiver = Transceiver(bus, cfg)
    yield bus, node, transceiver, probe
    node.stop()
    transceiver.close()
    bus.close()


def test_node_answers_individual_ping(link, sleep):
    bus, node, transceiver, _ = link
    transceiver.ping()
    assert transceiver.waitTelemetry(1, timeout=5.0)
    _, position = transceiver.telemetry[0]
    assert position.shape == (3,)
    assert np.all(np.abs(position) < 10.0)
    assert sleep.calls == [pytest.approx(1.0)]


def test_node_answers_common_ping(link):
    bus, node, transceiver, _ = link
    transceiver.broadcastPing()
    assert transceiver.waitTelemetry(1, timeout=5.0)


def test_node_ignores_unknown_command(link):
    bus, node, transceiver, _ = link
    transceiver.ping('status')
    bus.join()
    assert node.transponder.join(1.0)
    assert transceiver.telemetry == []
    assert node.transponder.stats['pingsIgnored'] == 1


def test_node_answers_command(link):
    bus, node, transceiver, _ = link
    transceiver.sendCommand(5, 'x')
    assert transceiver.waitResponses(1, timeout=5.0)
    assert transceiver.responses == [
        CommandResponse('hi from transponder_T1', 1, 3)]


def test_node_updates_temperature(link):
    bus, node, transceiver, probe = link
    transceiver.sendTemperature(20.0)
    bus.join()
    assert node.transponder.environment.soundSpeed == pytest.approx(1580.4)


def test_node_drops_malformed_messages(link, caplog):
    bus, node, transceiver, _ = link
    topics = node.topics
    with caplog.at_level(logging.WARNING, logger='comm'):
        bus.publish(topics['individual_ping'], b'')
        bus.publish(topics['individual_ping'], b'PI')
        bus.publish(topics['individual_ping'], comm.writeTemperature(3.0))
        bus.publish(topics['temperature'], b'TEMP\x01')
        bus.publish(topics['command_request'], b'\xff\xfe\xfd\xfc')
        bus.join()
    assert 'EMPTY MESSAGE' in caplog.text
    assert 'SHORT MESSAGE' in caplog.text
    assert 'BAD FLAG' in caplog.text
    assert 'PARSE ERROR' in caplog.text
    assert 'FLAG DECODE ERROR' in caplog.text

    # Node keeps working
    transceiver.ping()
    assert transceiver.waitTelemetry(1, timeout=5.0)


def test_node_without_peer_keeps_listening(link):
    bus, node, transceiver, probe = link
    probe.removePeer('box')
    transceiver.ping()
    bus.join()
    assert node.transponder.join(1.0)
    assert transceiver.telemetry == []

    probe.setPeer('box', [1540.4, 0.0, 0.0])
    transceiver.ping()
    assert transceiver.waitTelemetry(1, timeout=5.0)
