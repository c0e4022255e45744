"""
Acoustic medium model for transponder timing.

Converts ambient temperature and depth into a speed of sound, turns a range
into a one-way propagation delay, and holds the node's environmental state
behind a lock so temperature updates and ping handling can run on different
threads.


Classes
-------
Environment
    Lock-guarded temperature and cached sound speed.


Functions
---------
soundSpeed(temperature, depth)
    First-order sound speed from temperature and depth.
propagationDelay(distance, speed)
    One-way acoustic travel time, rejecting non-physical speeds.


Notes
-----
The sound speed is cached: it reflects the depth at the moment the last
temperature update was processed, not the node's current depth.


References
----------
[1] Discovery of Sound in the Sea. How fast does sound travel?
https://dosits.org/tutorials/science/tutorial-speed/
"""

from typing import Tuple
import threading
import math
from usblsim.errors import InvalidEnvironment
from usblsim import logger

#-----------------------------------------------------------------------------#

# Global Variables
log = logger.addLog('env')

# Sound Speed Model Constants
C_REF = 1540.4          # Reference sound speed at 10 C and z=0 (m/s)
T_REF = 10.0            # Reference temperature (C)
DEPTH_GAIN = 17.0       # Speed change per 1000 m of depth (m/s)
TEMP_GAIN = 4.0         # Speed change per degree C (m/s)

###############################################################################

def soundSpeed(temperature:float, depth:float)->float:
    """
    Compute speed of sound from temperature and depth.


    Parameters
    ----------
    temperature : float
        Water temperature in degrees Celsius.
    depth : float
        Z coordinate of the node in the world frame, in meters. Used as-is:
        the world frame is z-up, so a body below the surface has negative Z
        and a lower computed speed.


    Returns
    -------
    c : float
        Speed of sound in m/s.


    Notes
    -----
    c = 1540.4 + (depth / 1000) * 17 + (temperature - 10) * 4
    """

    return (C_REF + (depth / 1000.0) * DEPTH_GAIN
            + (temperature - T_REF) * TEMP_GAIN)

###############################################################################

def propagationDelay(distance:float, speed:float)->float:
    """
    Compute one-way acoustic travel time over a straight path.


    Parameters
    ----------
    distance : float
        Range between the two bodies in meters.
    speed : float
        Speed of sound in m/s.


    Returns
    -------
    delay : float
        Travel time in seconds.


    Raises
    ------
    InvalidEnvironment
        If speed is zero, negative, or not finite.
    """

    if not (math.isfinite(speed) and (speed > 0.0)):
        raise InvalidEnvironment(f'sound speed {speed} m/s is not positive')

    return distance / speed

###############################################################################

class Environment:
    """
    Environmental state of one transponder node.

    Holds the latest temperature and the sound speed derived from it. Both are
    read and written under a single lock; the sound speed has no setter and is
    only changed by update().


    Parameters
    ----------
    temperature : float, default=10.0
        Initial water temperature in degrees Celsius.
    depth : float, default=0.0
        Node Z coordinate used for the initial sound speed.


    Attributes
    ----------
    temperature : float
        Latest temperature in degrees Celsius. Read-only.
    soundSpeed : float
        Sound speed in m/s computed at the last update. Read-only.
    """

    ## Constructor ===========================================================#
    def __init__(self, temperature:float=T_REF, depth:float=0.0)->None:
        self._lock = threading.Lock()
        self._temperature = temperature
        self._soundSpeed = soundSpeed(temperature, depth)

    ## Properties ============================================================#
    @property
    def temperature(self)->float:
        """Latest temperature in degrees Celsius."""
        with self._lock:
            return self._temperature

    @property
    def soundSpeed(self)->float:
        """Cached sound speed in m/s."""
        with self._lock:
            return self._soundSpeed

    ## Methods ===============================================================#
    def update(self, temperature:float, depth:float)->float:
        """
        Store a new temperature and recompute the sound speed once.


        Parameters
        ----------
        temperature : float
            New water temperature in degrees Celsius.
        depth : float
            Node Z coordinate at the time of the update, in meters.


        Returns
        -------
        c : float
            Newly computed sound speed in m/s.
        """

        c = soundSpeed(temperature, depth)
        with self._lock:
            self._temperature = temperature
            self._soundSpeed = c
        log.debug("T=%.2f C, z=%.2f m -> c=%.2f m/s", temperature, depth, c)
        return c

    #--------------------------------------------------------------------------
    def snapshot(self)->Tuple[float, float]:
        """Return (temperature, soundSpeed) read together."""
        with self._lock:
            return self._temperature, self._soundSpeed

    #--------------------------------------------------------------------------
    def __repr__(self)->str:
        t, c = self.snapshot()
        return f'Environment(temperature={t:.2f}, soundSpeed={c:.2f})'
