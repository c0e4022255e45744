"""
Position sources and measurement noise for the transponder.

Implements the position side of the transponder: probes that answer "where am
I" and "where is the peer" from the host world, and the Gaussian noise model
applied to the position reported in telemetry.


Classes
-------
PositionProbe
    Abstract base class for self/peer position queries.
WorldProbe
    Probe backed by a simulator World.
StaticProbe
    Probe with fixed, settable positions.
PositionNoise
    Independent Gaussian perturbation on each axis.


Functions
---------
distance(a, b) : Euclidean distance between two positions.
asPosition(value) : Coerce a 3-sequence to a float64 position array.


Notes
-----
Probes are always-current: the transponder never caches a position between
calls, and every query returns a new array.
"""

from __future__ import annotations
from typing import Dict, Optional, Sequence, TYPE_CHECKING
from numpy.typing import NDArray
from abc import ABC, abstractmethod
if (TYPE_CHECKING):
    from usblsim.simulator import World
import numpy as np
import math
from usblsim.errors import ConfigurationError, PeerNotFound
from usblsim import logger

#-----------------------------------------------------------------------------#

# Type Aliases
NPFltArr = NDArray[np.float64]

# Global Variables
log = logger.addLog('nav')

###############################################################################

def asPosition(value:Sequence[float])->NPFltArr:
    """
    Coerce a sequence of three numbers to a position vector.


    Parameters
    ----------
    value : sequence of float
        [x, y, z] in meters.


    Returns
    -------
    position : ndarray, shape (3,)
        Fresh float64 copy.
    """

    position = np.array(value, dtype=np.float64).reshape(-1)
    if (position.shape != (3,)):
        raise ValueError(f'position must have 3 elements, got {value!r}')
    return position

###############################################################################

def distance(a:NPFltArr, b:NPFltArr)->float:
    """Euclidean distance in meters between positions a and b."""

    return float(np.linalg.norm(np.asarray(a) - np.asarray(b)))

###############################################################################

class PositionProbe(ABC):
    """
    Abstract source of self and peer positions.

    The transponder treats both queries as synchronous and always-current.
    Subclasses must implement selfPosition() and peerPosition().
    """

    @abstractmethod
    def selfPosition(self)->NPFltArr:
        """
        Current world position of this node.

        Returns
        -------
        position : ndarray, shape (3,)
        """

    @abstractmethod
    def peerPosition(self, peerName:str)->NPFltArr:
        """
        Current world position of the named peer body.

        Parameters
        ----------
        peerName : str
            Name of the peer body.

        Returns
        -------
        position : ndarray, shape (3,)

        Raises
        ------
        PeerNotFound
            If no body with that name exists.
        """

###############################################################################

class WorldProbe(PositionProbe):
    """
    Position probe reading poses from a simulator World.


    Parameters
    ----------
    world : World
        Host world with modelByName(name) returning a body or None.
    selfName : str
        Name of the body that carries this transponder.
    """

    def __init__(self, world:World, selfName:str)->None:
        self.world = world
        self.selfName = selfName

    def selfPosition(self)->NPFltArr:
        return self._lookup(self.selfName)

    def peerPosition(self, peerName:str)->NPFltArr:
        return self._lookup(peerName)

    def _lookup(self, name:str)->NPFltArr:
        body = self.world.modelByName(name)
        if (body is None):
            log.debug("%s: lookup failed for '%s'", self.selfName, name)
            raise PeerNotFound(f"no body named '{name}' in world")
        return body.worldPosition()

###############################################################################

class StaticProbe(PositionProbe):
    """
    Position probe with fixed positions.

    Positions can be changed between queries with setSelf() and setPeer(),
    which is enough to script motion in tests.


    Parameters
    ----------
    selfPos : sequence of float
        Position of this node.
    peers : dict, optional
        Mapping of peer name to position.
    """

    def __init__(self,
                 selfPos:Sequence[float],
                 peers:Optional[Dict[str,Sequence[float]]] = None,
                 )->None:
        self._self = asPosition(selfPos)
        self._peers = {k:asPosition(v) for k,v in (peers or {}).items()}

    def setSelf(self, position:Sequence[float])->None:
        self._self = asPosition(position)

    def setPeer(self, name:str, position:Sequence[float])->None:
        self._peers[name] = asPosition(position)

    def removePeer(self, name:str)->None:
        self._peers.pop(name, None)

    def selfPosition(self)->NPFltArr:
        return self._self.copy()

    def peerPosition(self, peerName:str)->NPFltArr:
        try:
            return self._peers[peerName].copy()
        except KeyError:
            raise PeerNotFound(f"no peer named '{peerName}'") from None

###############################################################################

class PositionNoise:
    """
    Gaussian noise model for reported positions.

    Draws three independent samples from N(mu, sigma^2), one per axis, and
    adds them to the true position. The generator is owned by the instance
    and advances across calls; it is never reseeded per sample.


    Parameters
    ----------
    mu : float, default=0.0
        Mean of the per-axis perturbation in meters.
    sigma : float, default=1.0
        Standard deviation of the per-axis perturbation in meters. Must be
        greater than zero.
    seed : int, optional
        Seed for numpy.random.default_rng. None gives a random seed.
    rng : numpy.random.Generator, optional
        Generator to use instead of creating one. Overrides seed.


    Raises
    ------
    ConfigurationError
        If sigma <= 0 or either parameter is not finite.
    """

    ## Constructor ===========================================================#
    def __init__(self,
                 mu:float = 0.0,
                 sigma:float = 1.0,
                 seed:Optional[int] = None,
                 rng:Optional[np.random.Generator] = None,
                 )->None:

        if not (math.isfinite(mu)):
            raise ConfigurationError(f'noise mu must be finite, got {mu}')
        if not (math.isfinite(sigma) and (sigma > 0.0)):
            raise ConfigurationError(
                f'noise sigma must be greater than zero, got {sigma}')

        self.mu = float(mu)
        self.sigma = float(sigma)
        self.rng = rng if (rng is not None) else np.random.default_rng(seed)

    ## Methods ===============================================================#
    def sample(self)->NPFltArr:
        """Draw one (3,) perturbation vector."""
        return self.rng.normal(self.mu, self.sigma, 3)

    #--------------------------------------------------------------------------
    def perturb(self, position:Sequence[float])->NPFltArr:
        """
        Return a noisy copy of position.


        Parameters
        ----------
        position : sequence of float
            True [x, y, z] in meters. Not modified.


        Returns
        -------
        noisy : ndarray, shape (3,)
            position + [N(mu,sigma), N(mu,sigma), N(mu,sigma)]
        """

        return asPosition(position) + self.sample()

    #--------------------------------------------------------------------------
    def __repr__(self)->str:
        return f'PositionNoise(mu={self.mu}, sigma={self.sigma})'
