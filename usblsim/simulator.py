"""
Host world and simulation driver for transponder scenarios.

Provides a minimal kinematic world of named bodies for transponders to range
against, and a Simulator that steps the world in real time, interrogates the
transponders on a schedule, and records reported against true positions.


Classes
-------
Body
    Named point body with constant velocity.
World
    Collection of bodies, looked up by name.
Simulator
    Real-time scenario driver.


Notes
-----
Transponder delays are waited out in real time on their own threads, so the
simulation loop also runs in real time (sleeping sampleTime per step) unless
realTime=False.
"""

from typing import Dict, List, Optional, Sequence, Tuple
from numpy.typing import NDArray
from threading import Lock
import os
import time
import datetime
import numpy as np
from usblsim.navigation import WorldProbe, asPosition
from usblsim.transponder import TransponderConfig
from usblsim.communication import MessageBus, TransponderNode, Transceiver
from usblsim.errors import PeerNotFound, InvalidEnvironment
from usblsim import logger

#-----------------------------------------------------------------------------#

# Type Aliases
NPFltArr = NDArray[np.float64]

# Global Variables
log = logger.addLog('sim')
SETTLE_MARGIN = 0.5                 # extra wait after the longest delay (sec)

###############################################################################

class Body:
    """
    Named point body moving with constant velocity.


    Parameters
    ----------
    name : str
        Body name.
    position : sequence of float
        Initial world position [x, y, z] (m).
    velocity : sequence of float, default=[0, 0, 0]
        World velocity (m/s).
    """

    def __init__(self,
                 name:str,
                 position:Sequence[float],
                 velocity:Sequence[float] = (0.0, 0.0, 0.0),
                 )->None:
        self.name = name
        self._lock = Lock()
        self._position = asPosition(position)
        self.velocity = asPosition(velocity)

    def worldPosition(self)->NPFltArr:
        """Copy of the current world position."""
        with self._lock:
            return self._position.copy()

    def setPosition(self, position:Sequence[float])->None:
        with self._lock:
            self._position = asPosition(position)

    def step(self, dt:float)->None:
        with self._lock:
            self._position = self._position + self.velocity * dt

    def __repr__(self)->str:
        return (f'Body({self.name!r}, position={self.worldPosition()}, '
                f'velocity={self.velocity})')

###############################################################################

class World:
    """
    Set of bodies addressed by name.


    Methods
    -------
    addBody(name, position, velocity)
        Create and add a body.
    removeBody(name)
        Remove a body if present.
    modelByName(name)
        Body with name, or None.
    body(name)
        Body with name, raising PeerNotFound if absent.
    step(dt)
        Advance every body by dt seconds.
    """

    def __init__(self)->None:
        self._bodies:Dict[str,Body] = {}
        self._lock = Lock()
        self.time = 0.0

    @property
    def names(self)->List[str]:
        with self._lock:
            return list(self._bodies)

    #--------------------------------------------------------------------------
    def addBody(self,
                name:str,
                position:Sequence[float],
                velocity:Sequence[float] = (0.0, 0.0, 0.0),
                )->Body:
        body = Body(name, position, velocity)
        with self._lock:
            if (name in self._bodies):
                log.warning("Replacing body '%s'", name)
            self._bodies[name] = body
        return body

    #--------------------------------------------------------------------------
    def removeBody(self, name:str)->None:
        with self._lock:
            self._bodies.pop(name, None)

    #--------------------------------------------------------------------------
    def modelByName(self, name:str)->Optional[Body]:
        with self._lock:
            return self._bodies.get(name)

    #--------------------------------------------------------------------------
    def body(self, name:str)->Body:
        b = self.modelByName(name)
        if (b is None):
            raise PeerNotFound(f"no body named '{name}' in world")
        return b

    #--------------------------------------------------------------------------
    def step(self, dt:float)->None:
        with self._lock:
            bodies = list(self._bodies.values())
        for b in bodies:
            b.step(dt)
        self.time += dt

###############################################################################

class Simulator:
    """
    Real-time driver for transponder scenarios.

    Owns a MessageBus, a TransponderNode and Transceiver per transponder, and
    the World they live in. Each step advances the world; every pingInterval
    seconds each transceiver interrogates its transponder. Received telemetry
    is stored next to the true position of the transponder's body at the
    moment of reception.


    Parameters
    ----------
    name : str, default='Simulation'
        Simulation title.
    sampleTime : float, default=0.05
        Time step per iteration in seconds.
    world : World, optional
        Host world. A new empty World is created if None.
    logging : str, default='all'
        Main logger configuration: 'all', 'none', 'nofile', 'noout'.
    commLogging : str, default='nofile'
        Transport logger configuration: 'all' (own file and console),
        'noout' (own file only), 'nofile' (main handlers), 'none'.
    **kwargs
        Additional attributes to set on simulator, e.g. pingInterval,
        pingMode ('individual' or 'common'), realTime, outDir.


    Attributes
    ----------
    bus : MessageBus
        Transport shared by all nodes.
    nodes : dict
        callSign -> TransponderNode.
    transceivers : dict
        callSign -> Transceiver.
    records : dict
        callSign -> list of (simTime, truePosition, reportedPosition).


    Examples
    --------
    >>> world = World()
    >>> world.addBody('box', [0, 0, 0])
    >>> world.addBody('beacon', [100, 0, -20], velocity=[0.5, 0, 0])
    >>> sim = Simulator('Survey', 0.05, world, logging='noout')
    >>> cfg = TransponderConfig('usbl', 'transponder', '1',
    ...                         'transceiver', 'transceiver_1', sigma=0.5)
    >>> sim.addTransponder(cfg, 'beacon')
    >>> sim.run(5.0)
    >>> times, errors = sim.telemetryError('transponder_1')
    """

    ## Constructor ===========================================================#
    def __init__(self,
                 name:str = 'Simulation',
                 sampleTime:float = 0.05,
                 world:Optional[World] = None,
                 logging:str = 'all',
                 commLogging:str = 'nofile',
                 **kwargs,
                 )->None:

        ## Time Stamp
        self.initTime = datetime.datetime.now().strftime("%y%m%d-%H%M%S")

        ## Simulation
        self.name = name                            # simulation title
        self.sampleTime = sampleTime                # iteration time step (sec)
        self.world = world if (world is not None) else World()
        self.clock = 0.0                            # current simulation time

        ## Interrogation
        self.pingInterval = 1.0                     # time between pings (sec)
        self.pingMode = 'individual'                # 'individual' | 'common'
        self.realTime = True                        # sleep sampleTime per step
        self.outDir = None                          # log file directory

        ## Network
        self.bus = MessageBus()
        self.nodes:Dict[str,TransponderNode] = {}
        self.transceivers:Dict[str,Transceiver] = {}
        self.records:Dict[str,List[Tuple[float,NPFltArr,NPFltArr]]] = {}

        ## User Keyword Attributes
        for key,value in kwargs.items():
            if key not in {                         # computed attributes
                'bus',
                'nodes',
                'transceivers',
                'records',
                'clock',
                'commLog',
            }:
                setattr(self, key, value)

        ## Logging
        self.log = None                             # main logger
        self.commLog = None                         # transport logger
        self.logging = logging                      # logging setting
        self.commLogging = commLogging              # comm logging setting

    ## Properties ============================================================#
    @property
    def logFile(self)->str:
        """Main log file path."""
        baseName = f'{self.name}_{self.initTime}.log'
        if (self.outDir):
            os.makedirs(self.outDir, exist_ok=True)
            return os.path.join(self.outDir, baseName)
        return baseName

    #--------------------------------------------------------------------------
    @property
    def logging(self)->str:
        """Get main logger configuration."""
        return self._logging

    @logging.setter
    def logging(self, logging:str)->None:
        """
        Set main logger configuration.

        Parameters
        ----------
        logging : str
            'all', 'none', 'noout', 'quiet', 'nofile', 'onlyconsole'.
        """

        def setNoneLog()->None:
            self.log = logger.noneLog(logger.MAIN_LOG)

        def setNoConsoleLog()->None:
            if (self.log is not None):
                logger.removeLog(logger.MAIN_LOG)
            self.log = logger.setupMain(fileName=self.logFile, outFormat=None)

        def setNoFileLog()->None:
            if (self.log is not None):
                logger.removeLog(logger.MAIN_LOG)
            self.log = logger.setupMain(fileFormat=None)

        def setDefaultLog()->None:
            if (self.log is not None):
                logger.removeLog(logger.MAIN_LOG)
            self.log = logger.setupMain(fileName=self.logFile)

        # Map the logging settings to logging setter functions
        logSettings = {
            'NONE': setNoneLog,
            'OFF': setNoneLog,
            'NOOUT': setNoConsoleLog,
            'QUIET': setNoConsoleLog,
            'ONLYFILE': setNoConsoleLog,
            'NOFILE': setNoFileLog,
            'ONLYCONSOLE': setNoFileLog,
        }

        configLog = logSettings.get(logging.upper(), setDefaultLog)
        configLog()
        self._logging = logging

    #--------------------------------------------------------------------------
    @property
    def commFile(self)->str:
        """Transport log file path."""
        baseName = f'{self.name}_{self.initTime}_comm.log'
        if (self.outDir):
            os.makedirs(self.outDir, exist_ok=True)
            return os.path.join(self.outDir, baseName)
        return baseName

    #--------------------------------------------------------------------------
    @property
    def commLogging(self)->str:
        """Get transport logger configuration."""
        return self._commLogging

    @commLogging.setter
    def commLogging(self, commLogging:str)->None:
        """
        Set transport logger configuration.

        Parameters
        ----------
        commLogging : str
            'all', 'none', 'noout', 'quiet', 'nofile', 'onlyconsole'.

        Notes
        -----
        The transport module logger is reconfigured in place, so nodes and
        the bus keep logging through the same logger object.
        """

        def setNoneComm()->None:
            self.commLog = logger.setupComm(file=False, out=False)

        def setNoConsoleComm()->None:
            self.commLog = logger.setupComm(fileName=self.commFile, out=False)

        def setNoFileComm()->None:
            self.commLog = logger.setupComm(file=False)

        def setDefaultComm()->None:
            self.commLog = logger.setupComm(fileName=self.commFile)

        commSettings = {
            'NONE': setNoneComm,
            'OFF': setNoneComm,
            'NOOUT': setNoConsoleComm,
            'QUIET': setNoConsoleComm,
            'ONLYFILE': setNoConsoleComm,
            'NOFILE': setNoFileComm,
            'ONLYCONSOLE': setNoFileComm,
        }

        configComm = commSettings.get(commLogging.upper(), setDefaultComm)
        configComm()
        self._commLogging = commLogging

    #--------------------------------------------------------------------------
    @property
    def N(self)->int:
        """Number of transponders."""
        return len(self.nodes)

    ## Special Methods =======================================================#
    def __str__(self)->str:
        line = '*' * 64
        nodeOut = [f" {n.transponder}" for n in self.nodes.values()]
        return "\n".join([
            line,
            f"{self.__class__.__name__}: {self.name}",
            line,
            f"Sampling frequency: {round(1 / self.sampleTime)} Hz",
            f"Ping interval: {self.pingInterval} s ({self.pingMode})",
            f"Bodies: {', '.join(self.world.names) or 'None'}",
            f"Transponders: {self.N}",
            *nodeOut,
            line,
        ])

    ## Methods ===============================================================#
    def addTransponder(self,
                       config:TransponderConfig,
                       bodyName:str,
                       **kwargs,
                       )->TransponderNode:
        """
        Attach a transponder to a body and start it.


        Parameters
        ----------
        config : TransponderConfig
            Transponder configuration.
        bodyName : str
            Body that carries the transponder. Must exist in the world.
        **kwargs
            Passed to Transponder (noise, sleep, clock).


        Returns
        -------
        node : TransponderNode
        """

        self.world.body(bodyName)
        probe = WorldProbe(self.world, bodyName)
        node = TransponderNode(self.bus, config, probe, **kwargs)
        callSign = node.callSign

        def record(position:NPFltArr)->None:
            truePos = probe.selfPosition()
            self.records[callSign].append((self.clock, truePos, position))

        self.records[callSign] = []
        self.nodes[callSign] = node
        self.transceivers[callSign] = Transceiver(self.bus, config,
                                                  onTelemetry=record,
                                                  clock=lambda: self.clock)
        node.start()
        self.log.info('Added %s on %s', callSign, bodyName)
        return node

    #--------------------------------------------------------------------------
    def interrogate(self)->None:
        """Ping every transponder once, by the current pingMode."""

        if (self.pingMode.upper() == 'COMMON'):
            sent = set()
            for t in self.transceivers.values():
                if (t.identity.namespace not in sent):
                    t.broadcastPing()
                    sent.add(t.identity.namespace)
        else:
            for t in self.transceivers.values():
                t.ping()

    #--------------------------------------------------------------------------
    def run(self, runTime:float, settle:Optional[float]=None)->None:
        """
        Run the scenario for runTime seconds of simulation time.


        Parameters
        ----------
        runTime : float
            Simulation duration in seconds.
        settle : float, optional
            Real time allowed after the loop for pending responses. Default is
            the longest current propagation delay of any node plus
            SETTLE_MARGIN. Responses still in flight after settle are not
            recorded.
        """

        self.log.info(f"{self}")
        start = time.time()
        nSteps = int(round(runTime / self.sampleTime))
        pingSteps = max(1, int(round(self.pingInterval / self.sampleTime)))

        for i in range(nSteps + 1):
            self.clock = i * self.sampleTime
            logger.setSimTime(self.clock)

            if (i % pingSteps == 0):
                self.interrogate()

            self.world.step(self.sampleTime)
            if (self.realTime):
                time.sleep(self.sampleTime)

        # Let in-flight pings and responses arrive
        self.bus.join()
        if (settle is None):
            settle = self.maxDelay() + SETTLE_MARGIN
        for node in self.nodes.values():
            node.transponder.join(settle)
        self.bus.join()

        endData = round(time.time() - start)
        line = '*' * 64
        self.log.info(line)
        for callSign, rec in self.records.items():
            self.log.info('%s: %d positions received', callSign, len(rec))
        self.log.info(f'Run Time:'+
                      f' (Real) {datetime.timedelta(seconds=endData)},'+
                      f' (Simulated) {datetime.timedelta(seconds=runTime)}')
        self.log.info(line)

    #--------------------------------------------------------------------------
    def maxDelay(self)->float:
        """Longest current propagation delay of any node (sec), 0 if none."""

        delays = [0.0]
        for callSign, node in self.nodes.items():
            try:
                delays.append(node.transponder.propagationDelay())
            except (PeerNotFound, InvalidEnvironment) as e:
                log.debug('%s: no delay estimate - %s', callSign, e)
        return max(delays)

    #--------------------------------------------------------------------------
    def telemetryError(self, callSign:str)->Tuple[NPFltArr,NPFltArr]:
        """
        Distance between reported and true positions over time.


        Parameters
        ----------
        callSign : str
            Transponder call sign, e.g. 'transponder_1'.


        Returns
        -------
        times : ndarray, shape (n,)
            Simulation time of each received position.
        errors : ndarray, shape (n,)
            Euclidean error of each received position (m).
        """

        rec = self.records[callSign]
        if (not rec):
            return np.empty(0), np.empty(0)
        times = np.array([r[0] for r in rec])
        errors = np.array([np.linalg.norm(r[2] - r[1]) for r in rec])
        return times, errors

    #--------------------------------------------------------------------------
    def positions(self, callSign:str)->Tuple[NPFltArr,NPFltArr]:
        """(true, reported) position arrays of shape (n, 3)."""

        rec = self.records[callSign]
        if (not rec):
            return np.empty((0, 3)), np.empty((0, 3))
        return (np.array([r[1] for r in rec]),
                np.array([r[2] for r in rec]))

    #--------------------------------------------------------------------------
    def close(self)->None:
        """Stop every node and the bus."""

        for node in self.nodes.values():
            node.stop()
        for t in self.transceivers.values():
            t.close()
        self.bus.close()
