import logging
import threading
import numpy as np
import pytest
from usblsim.navigation import StaticProbe, PositionNoise
from usblsim.transponder import (Transponder, TransponderConfig,
                                 InterrogationKind, ProtocolState,
                                 CommandResponse, checkCommand)
from usblsim.errors import ConfigurationError, UnknownCommand, PeerNotFound

INDIVIDUAL = InterrogationKind.INDIVIDUAL
COMMON = InterrogationKind.COMMON


def build(config, probe, sleep, **kwargs):
    telemetry = []
    xpdr = Transponder(config, probe, telemetry=telemetry.append,
                       sleep=sleep, clock=lambda: 0.0, **kwargs)
    return xpdr, telemetry


# Configuration ---------------------------------------------------------------

def test_config_from_sdf_names(configFactory):
    cfg = TransponderConfig.fromDict({
        'namespace': 'usbl',
        'transponder_device': 'transponder',
        'transponder_ID': '1',
        'transceiver_device': 'transceiver',
        'transceiver_ID': 'transceiver_7',
        'mu': '0.5',
        'sigma': '2',
    })
    assert cfg.transponderID == '1'
    assert cfg.mu == 0.5
    assert cfg.sigma == 2.0
    assert cfg.peer == 'box'
    assert cfg.responseMode == 'worker'
    assert cfg.identity.transceiverNumber == 7


def test_config_missing_required():
    with pytest.raises(ConfigurationError, match='transceiver_ID'):
        TransponderConfig.fromDict({
            'namespace': 'usbl',
            'transponder_device': 'transponder',
            'transponder_ID': '1',
            'transceiver_device': 'transceiver',
        })


def test_config_rejects_zero_sigma(configFactory):
    with pytest.raises(ConfigurationError):
        configFactory(sigma=0.0)


def test_config_rejects_transceiver_without_digit(configFactory):
    with pytest.raises(ConfigurationError):
        configFactory(transceiverID='tx_a')


def test_config_rejects_unknown_mode(configFactory):
    with pytest.raises(ConfigurationError):
        configFactory(responseMode='async')


def test_config_ignores_unknown_key(caplog):
    params = {
        'namespace': 'usbl', 'transponderDevice': 'transponder',
        'transponderID': '1', 'transceiverDevice': 'transceiver',
        'transceiverID': 'tx_1', 'colour': 'red',
    }
    with caplog.at_level(logging.WARNING, logger='xpdr'):
        cfg = TransponderConfig.fromDict(params)
    assert cfg.transponderID == '1'
    assert 'colour' in caplog.text


def test_config_from_sdf():
    cfg = TransponderConfig.fromSdf("""
    <sdf version="1.6">
      <model name="beacon">
        <plugin name="transponder" filename="libtransponderPlugin.so">
          <namespace>usbl</namespace>
          <transponder_device>transponder</transponder_device>
          <transponder_ID>2</transponder_ID>
          <transceiver_device>transceiver</transceiver_device>
          <transceiver_ID>transceiver_1</transceiver_ID>
          <sigma>0.25</sigma>
          <seed>11</seed>
        </plugin>
      </model>
    </sdf>""")
    assert cfg.transponderID == '2'
    assert cfg.sigma == 0.25
    assert cfg.seed == 11


def test_config_from_bad_sdf():
    with pytest.raises(ConfigurationError):
        TransponderConfig.fromSdf('<plugin><namespace>usbl</plugin>')
    with pytest.raises(ConfigurationError):
        TransponderConfig.fromSdf('<model name="x"/>')


# Commands --------------------------------------------------------------------

def test_check_command():
    checkCommand('ping')
    for command in ('PING', 'pong', '', 'ping '):
        with pytest.raises(UnknownCommand):
            checkCommand(command)


def test_command_response(config, probe, sleep):
    responses = []
    xpdr = Transponder(config, probe, response=responses.append, sleep=sleep)
    response = xpdr.onCommandRequest(5, 'T1', 'x')
    assert response == CommandResponse('hi from transponder_T1', 1, 3)
    assert responses == [response]
    assert sleep.calls == []


def test_command_response_uses_own_identity(configFactory, probe, sleep):
    cfg = configFactory(transponderID='9', transceiverID='transceiver_7',
                        responseMode='blocking')
    xpdr = Transponder(cfg, probe, sleep=sleep)
    response = xpdr.onCommandRequest(1, 'someone_else', '')
    assert response.data == 'hi from transponder_9'
    assert response.transceiverID == 7


# Temperature -----------------------------------------------------------------

def test_temperature_update_uses_self_depth(config, sleep):
    probe = StaticProbe([0.0, 0.0, 1000.0], {'box': [0.0, 0.0, 0.0]})
    xpdr, _ = build(config, probe, sleep)
    assert xpdr.environment.soundSpeed == pytest.approx(1557.4)
    assert xpdr.onTemperatureUpdate(20.0) == pytest.approx(1597.4)
    assert xpdr.environment.temperature == 20.0


def test_non_positive_sound_speed_drops_ping(config, probe, sleep, caplog):
    xpdr, telemetry = build(config, probe, sleep)
    xpdr.onTemperatureUpdate(-400.0)
    with caplog.at_level(logging.WARNING, logger='xpdr'):
        assert not xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    assert telemetry == []
    assert sleep.calls == []
    assert 'dropped' in caplog.text

    xpdr.onTemperatureUpdate(10.0)
    assert xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    assert len(telemetry) == 1


# Interrogation ---------------------------------------------------------------

def test_ping_waits_propagation_delay(config, probe, sleep):
    xpdr, telemetry = build(config, probe, sleep)
    assert xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    assert sleep.calls == [pytest.approx(1.0)]
    assert len(telemetry) == 1
    assert telemetry[0].shape == (3,)
    assert np.all(np.abs(telemetry[0]) < 10.0)
    assert xpdr.state is ProtocolState.IDLE


def test_common_ping_behaves_like_individual(config, probe, sleep):
    xpdr, telemetry = build(config, probe, sleep)
    assert xpdr.onInterrogationPing(COMMON, 'ping')
    assert xpdr.onInterrogationPing('common', 'ping')
    assert sleep.calls == [pytest.approx(1.0), pytest.approx(1.0)]
    assert len(telemetry) == 2


def test_ping_uses_named_peer(config, probe, sleep):
    probe.setPeer('buoy', [3081.6, 0.0, 0.0])
    xpdr, _ = build(config, probe, sleep)
    xpdr.onInterrogationPing(INDIVIDUAL, 'ping', peerName='buoy')
    assert sleep.calls == [pytest.approx(3081.6 / 1540.4)]


@pytest.mark.parametrize('command', ['PING', 'pong', '', 'ping\n'])
def test_unknown_command_is_ignored(config, probe, sleep, command):
    xpdr, telemetry = build(config, probe, sleep)
    assert not xpdr.onInterrogationPing(INDIVIDUAL, command)
    assert telemetry == []
    assert sleep.calls == []
    assert xpdr.state is ProtocolState.IDLE
    assert xpdr.stats['pingsIgnored'] == 1


def test_two_pings_report_different_noise(config, probe, sleep):
    xpdr, telemetry = build(config, probe, sleep)
    xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    assert len(telemetry) == 2
    assert not np.array_equal(telemetry[0], telemetry[1])


def test_noise_mean_offsets_report(configFactory, probe, sleep):
    cfg = configFactory(mu=100.0, sigma=1e-6, responseMode='blocking')
    xpdr, telemetry = build(cfg, probe, sleep)
    xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    assert telemetry[0] == pytest.approx([100.0, 100.0, 100.0], abs=1e-3)


def test_injected_noise(config, probe, sleep):
    noise = PositionNoise(0.0, 1.0, rng=np.random.default_rng(5))
    expected = PositionNoise(0.0, 1.0, seed=5).perturb([0, 0, 0])
    xpdr, telemetry = build(config, probe, sleep, noise=noise)
    xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    assert np.array_equal(telemetry[0], expected)


def test_reported_position_is_sampled_at_send_time(config, probe):
    def moveDuringWait(seconds):
        probe.setSelf([50.0, 0.0, 0.0])

    xpdr, telemetry = build(config, probe, moveDuringWait,
                            noise=PositionNoise(0.0, 1e-9, seed=0))
    xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    assert telemetry[0] == pytest.approx([50.0, 0.0, 0.0], abs=1e-6)


def test_missing_peer_does_not_stop_node(config, sleep, caplog):
    probe = StaticProbe([0.0, 0.0, 0.0])
    xpdr, telemetry = build(config, probe, sleep)

    with caplog.at_level(logging.ERROR, logger='xpdr'):
        assert not xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    assert telemetry == []
    assert "'box'" in caplog.text
    assert xpdr.stats['pingsDropped'] == 1

    probe.setPeer('box', [1540.4, 0.0, 0.0])
    assert xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    assert len(telemetry) == 1


# Worker mode -----------------------------------------------------------------

def test_worker_answers_command_while_ping_waits(configFactory, probe,
                                                 gatedSleep):
    cfg = configFactory(responseMode='worker')
    xpdr, telemetry = build(cfg, probe, gatedSleep)
    try:
        assert xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
        assert gatedSleep.entered.wait(5.0)
        assert xpdr.state is ProtocolState.AWAITING_PROPAGATION_DELAY

        response = xpdr.onCommandRequest(1, 'T1', '')
        assert response.data == 'hi from transponder_T1'
        assert xpdr.onTemperatureUpdate(20.0) == pytest.approx(1580.4)
        assert telemetry == []

        gatedSleep.release.set()
        assert xpdr.join(5.0)
        assert len(telemetry) == 1
        assert gatedSleep.calls == [pytest.approx(1.0)]
    finally:
        gatedSleep.release.set()
        xpdr.stop()


def test_worker_stop_drains_queue(configFactory, probe, sleep):
    cfg = configFactory(responseMode='worker')
    xpdr, telemetry = build(cfg, probe, sleep)
    for _ in range(3):
        assert xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    xpdr.stop(wait=True, timeout=5.0)
    assert not xpdr.running
    assert len(telemetry) == 3
    assert xpdr.state is ProtocolState.IDLE


def test_worker_skips_sleep_for_past_deadline(configFactory, probe, sleep):
    cfg = configFactory(responseMode='worker')
    times = iter([0.0, 10.0])
    xpdr = Transponder(cfg, probe, sleep=sleep, clock=lambda: next(times))
    xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    xpdr.stop(timeout=5.0)
    assert sleep.calls == []
    assert xpdr.stats['telemetrySent'] == 1


def test_blocking_mode_has_no_worker(config, probe, sleep):
    xpdr, _ = build(config, probe, sleep)
    xpdr.start()
    assert not xpdr.running


def test_config_as_dict_feeds_from_dict(configFactory):
    cfg = configFactory(mu=0.25, peer='buoy')
    assert TransponderConfig.fromDict(cfg.asDict()) == cfg


def test_ping_accepted_while_stopping_is_answered(configFactory, probe,
                                                  gatedSleep):
    cfg = configFactory(responseMode='worker')
    xpdr, telemetry = build(cfg, probe, gatedSleep)
    try:
        assert xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
        assert gatedSleep.entered.wait(5.0)
        xpdr.stop(wait=False)
        assert xpdr.onInterrogationPing(INDIVIDUAL, 'ping')

        gatedSleep.release.set()
        assert xpdr.join(5.0)
        assert len(telemetry) == 2
        assert xpdr.state is ProtocolState.IDLE
    finally:
        gatedSleep.release.set()
        xpdr.stop(timeout=5.0)


def test_ping_after_stop_restarts_worker(configFactory, probe, sleep):
    cfg = configFactory(responseMode='worker')
    xpdr, telemetry = build(cfg, probe, sleep)
    xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    xpdr.stop(timeout=5.0)
    assert not xpdr.running

    assert xpdr.onInterrogationPing(INDIVIDUAL, 'ping')
    assert xpdr.join(5.0)
    assert len(telemetry) == 2
    xpdr.stop(timeout=5.0)


def test_stats_counted_across_threads(config, probe, sleep):
    xpdr, _ = build(config, probe, sleep)

    def answer():
        for _ in range(500):
            xpdr.onCommandRequest(1, 'T1', '')

    threads = [threading.Thread(target=answer) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10.0)
    assert xpdr.stats['commandsAnswered'] == 2000


def test_temperature_update_without_self_body(config, sleep, caplog):
    class LostProbe(StaticProbe):
        lost = False

        def selfPosition(self):
            if (self.lost):
                raise PeerNotFound('self body removed')
            return super().selfPosition()

    probe = LostProbe([0.0, 0.0, 0.0], {'box': [1540.4, 0.0, 0.0]})
    xpdr, _ = build(config, probe, sleep)
    probe.lost = True
    with caplog.at_level(logging.ERROR, logger='xpdr'):
        c = xpdr.onTemperatureUpdate(20.0)
    assert c == pytest.approx(1540.4)
    assert xpdr.environment.temperature == 10.0
    assert 'self body removed' in caplog.text
