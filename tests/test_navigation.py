import math
import numpy as np
import pytest
from usblsim.navigation import (PositionNoise, StaticProbe, WorldProbe,
                                distance, asPosition)
from usblsim.simulator import World
from usblsim.errors import ConfigurationError, PeerNotFound


def test_distance():
    assert distance([0, 0, 0], [3, 4, 0]) == pytest.approx(5.0)
    assert distance(np.zeros(3), np.zeros(3)) == 0.0


def test_as_position_rejects_wrong_shape():
    with pytest.raises(ValueError):
        asPosition([1.0, 2.0])


@pytest.mark.parametrize('sigma', [0.0, -1.0, math.nan, math.inf])
def test_noise_rejects_bad_sigma(sigma):
    with pytest.raises(ConfigurationError):
        PositionNoise(0.0, sigma)


def test_noise_rejects_non_finite_mu():
    with pytest.raises(ConfigurationError):
        PositionNoise(math.nan, 1.0)


def test_noise_does_not_modify_input():
    noise = PositionNoise(0.0, 1.0, seed=1)
    position = np.array([1.0, 2.0, 3.0])
    noisy = noise.perturb(position)
    assert np.array_equal(position, [1.0, 2.0, 3.0])
    assert noisy.shape == (3,)
    assert not np.array_equal(noisy, position)


def test_noise_advances_between_calls():
    noise = PositionNoise(0.0, 1.0, seed=1)
    a = noise.perturb([0, 0, 0])
    b = noise.perturb([0, 0, 0])
    assert not np.array_equal(a, b)


def test_noise_seed_is_reproducible():
    a = PositionNoise(0.5, 2.0, seed=42).perturb([0, 0, 0])
    b = PositionNoise(0.5, 2.0, seed=42).perturb([0, 0, 0])
    assert np.array_equal(a, b)


def test_noise_statistics():
    noise = PositionNoise(2.0, 0.5, seed=3)
    samples = np.array([noise.sample() for _ in range(4000)])
    assert samples.mean(axis=0) == pytest.approx([2.0, 2.0, 2.0], abs=0.05)
    assert samples.std(axis=0) == pytest.approx([0.5, 0.5, 0.5], abs=0.05)
    # Axes are drawn independently
    corr = np.corrcoef(samples.T)
    assert abs(corr[0, 1]) < 0.1


def test_static_probe():
    probe = StaticProbe([1, 2, 3], {'box': [4, 5, 6]})
    assert np.array_equal(probe.selfPosition(), [1, 2, 3])
    assert np.array_equal(probe.peerPosition('box'), [4, 5, 6])

    probe.selfPosition()[0] = 99.0
    assert probe.selfPosition()[0] == 1.0

    probe.removePeer('box')
    with pytest.raises(PeerNotFound):
        probe.peerPosition('box')


def test_world_probe():
    world = World()
    world.addBody('beacon', [10, 0, -5])
    world.addBody('box', [0, 0, 0])
    probe = WorldProbe(world, 'beacon')
    assert np.array_equal(probe.selfPosition(), [10, 0, -5])
    assert np.array_equal(probe.peerPosition('box'), [0, 0, 0])

    world.removeBody('box')
    with pytest.raises(PeerNotFound):
        probe.peerPosition('box')
