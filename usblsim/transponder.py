"""
Transponder node of an underwater acoustic positioning network.

A transponder answers interrogation pings from its transceiver with a noisy
estimate of its own position, after waiting the time an acoustic signal needs
to travel between the transponder and the peer body. It also answers
structured command requests immediately and tracks water temperature to keep
its sound speed current.


Classes
-------
**Configuration**
    Identity
        Immutable naming tuple of the node and its transceiver.
    TransponderConfig
        Validated construction parameters (identity, noise, options).

**Protocol**
    InterrogationKind
        INDIVIDUAL or COMMON ping source.
    ProtocolState
        IDLE or AWAITING_PROPAGATION_DELAY.
    CommandResponse
        Reply to a structured command request.
    Transponder
        Timing and response model: sound speed, propagation delay,
        interrogation/response protocol, and telemetry noise.


Functions
---------
checkCommand(command) : Raise UnknownCommand unless command is 'ping'.


Notes
-----
**Interrogation Cycle:**

1. Ping arrives with command 'ping' (anything else is logged and ignored).
2. Self and peer positions are queried once and the range is computed.
3. delay = range / soundSpeed. A non-positive sound speed drops the cycle.
4. The response waits for delay seconds.
5. Self position is queried again, perturbed by the noise model, and emitted
   as telemetry.

The reported position is the position at send time, not at ping time. The
range used for the delay is measured at ping time.

**Response Modes:**

- 'worker' : Accepted pings are queued to one responder thread that sleeps
  until each deadline. Temperature updates and command requests are not
  blocked by a waiting ping.
- 'blocking' : The ping handler sleeps in the calling thread. If all inbound
  channels share one delivery thread, a waiting ping delays every other
  message.

Pings are answered one at a time in arrival order. Accepted pings are never
cancelled.


See Also
--------
environment.soundSpeed : Sound speed formula
navigation.PositionNoise : Telemetry noise model
communication.TransponderNode : Topic and message wiring
"""

from __future__ import annotations
from dataclasses import dataclass, asdict, fields
from enum import Enum
from threading import Thread, Lock
from typing import Any, Callable, Dict, Mapping, Optional
from numpy.typing import NDArray
from typing_extensions import Self
import xml.etree.ElementTree as ET
import numpy as np
import queue
import time
from usblsim.environment import Environment, propagationDelay, T_REF
from usblsim.navigation import PositionProbe, PositionNoise, distance
from usblsim.errors import (ConfigurationError, UnknownCommand, PeerNotFound,
                            InvalidEnvironment)
from usblsim import logger

#-----------------------------------------------------------------------------#

# Type Aliases
NPFltArr = NDArray[np.float64]
TelemetrySink = Callable[[NPFltArr], None]
ResponseSink = Callable[['CommandResponse'], None]

# Global Variables
log = logger.addLog('xpdr')

# Protocol Constants
PING = 'ping'                   # Only accepted interrogation command
RESPONSE_ID = 1                 # Fixed command response ID
DEFAULT_PEER = 'box'            # Peer body used for range measurement

###############################################################################

class InterrogationKind(Enum):
    """Source of an interrogation ping."""

    INDIVIDUAL = 'individual'   # addressed to this transponder only
    COMMON = 'common'           # broadcast to every transponder in namespace

###############################################################################

class ProtocolState(Enum):
    """Interrogation cycle state."""

    IDLE = 'idle'
    AWAITING_PROPAGATION_DELAY = 'awaiting_propagation_delay'

###############################################################################

@dataclass(frozen=True)
class Identity:
    """
    Naming tuple of a transponder and its paired transceiver.

    Attributes
    ----------
    namespace : str
        Network namespace shared by the transponders of one transceiver.
    transponderDevice : str
        Transponder device name.
    transponderID : str
        Transponder ID.
    transceiverDevice : str
        Transceiver device name.
    transceiverID : str
        Transceiver ID. Last character must be a decimal digit.
    """

    namespace: str
    transponderDevice: str
    transponderID: str
    transceiverDevice: str
    transceiverID: str

    @property
    def callSign(self)->str:
        """Short name used in log lines, e.g. 'transponder_1'."""
        return f'{self.transponderDevice}_{self.transponderID}'

    @property
    def transceiverNumber(self)->int:
        """Numeric transceiver ID taken from the last character."""
        return int(self.transceiverID[-1])

###############################################################################

@dataclass(frozen=True)
class CommandResponse:
    """
    Reply to a structured command request.

    Attributes
    ----------
    data : str
        Reply text, 'hi from transponder_<transponderID>'.
    responseID : int
        Always 1.
    transceiverID : int
        Numeric transceiver ID (last digit of the configured transceiver ID).
    """

    data: str
    responseID: int
    transceiverID: int

###############################################################################

@dataclass(frozen=True)
class TransponderConfig:
    """
    Validated construction parameters of a transponder.

    Required identity fields raise ConfigurationError when missing or empty.
    Noise parameters are checked here so an invalid node never starts.


    Attributes
    ----------
    namespace, transponderDevice, transponderID, transceiverDevice,
    transceiverID : str
        Identity fields. See Identity.
    mu : float, default=0.0
        Mean of the per-axis position noise (m).
    sigma : float, default=1.0
        Standard deviation of the per-axis position noise (m). Must be > 0.
    peer : str, default='box'
        Name of the body whose range sets the propagation delay.
    temperature : float, default=10.0
        Initial water temperature (C).
    seed : int, optional
        Noise generator seed. None gives a random seed.
    responseMode : {'worker', 'blocking'}, default='worker'
        How the propagation delay is waited out.


    Alternative Constructors
    ------------------------
    fromDict(params) : Build from a mapping of SDF or attribute names.
    fromSdf(text) : Build from SDF plugin XML text.
    """

    namespace: str
    transponderDevice: str
    transponderID: str
    transceiverDevice: str
    transceiverID: str
    mu: float = 0.0
    sigma: float = 1.0
    peer: str = DEFAULT_PEER
    temperature: float = T_REF
    seed: Optional[int] = None
    responseMode: str = 'worker'

    # SDF parameter name -> attribute name
    SDF_NAMES = {
        'namespace': 'namespace',
        'transponder_device': 'transponderDevice',
        'transponder_ID': 'transponderID',
        'transceiver_device': 'transceiverDevice',
        'transceiver_ID': 'transceiverID',
        'mu': 'mu',
        'sigma': 'sigma',
        'peer': 'peer',
        'temperature': 'temperature',
        'seed': 'seed',
        'response_mode': 'responseMode',
    }
    REQUIRED = ('namespace', 'transponderDevice', 'transponderID',
                'transceiverDevice', 'transceiverID')
    RESPONSE_MODES = ('worker', 'blocking')

    ## Validation ============================================================#
    def __post_init__(self)->None:
        for name in self.REQUIRED:
            value = getattr(self, name)
            if (not isinstance(value, str)) or (not value):
                raise ConfigurationError(
                    f"missing required parameter <{self._sdfName(name)}>, "
                    "transponder will not be initialized")
        if not (self.transceiverID[-1].isdigit()):
            raise ConfigurationError(
                f"transceiver_ID '{self.transceiverID}' must end in a digit")
        if (self.responseMode not in self.RESPONSE_MODES):
            raise ConfigurationError(
                f"unknown response_mode '{self.responseMode}', expected one "
                f"of {self.RESPONSE_MODES}")
        # Same checks the noise model applies
        PositionNoise(self.mu, self.sigma, rng=np.random.default_rng(0))

    ## Properties ============================================================#
    @property
    def identity(self)->Identity:
        """Identity tuple of this configuration."""
        return Identity(self.namespace, self.transponderDevice,
                        self.transponderID, self.transceiverDevice,
                        self.transceiverID)

    ## Alternative Constructors ==============================================#
    @classmethod
    def fromDict(cls, params:Mapping[str,Any])->Self:
        """
        Build configuration from a parameter mapping.


        Parameters
        ----------
        params : mapping
            Keys may be SDF names ('transponder_ID') or attribute names
            ('transponderID'). Unknown keys are ignored with a warning.


        Returns
        -------
        config : TransponderConfig


        Raises
        ------
        ConfigurationError
            On a missing required field or a value that cannot be converted.
        """

        attrs = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in params.items():
            name = cls.SDF_NAMES.get(key, key)
            if (name not in attrs):
                log.warning("Ignoring unknown parameter <%s>", key)
                continue
            kwargs[name] = value

        for name in cls.REQUIRED:
            if (name not in kwargs):
                raise ConfigurationError(
                    f"missing required parameter <{cls._sdfName(name)}>, "
                    "transponder will not be initialized")

        try:
            for name in ('mu', 'sigma', 'temperature'):
                if (name in kwargs):
                    kwargs[name] = float(kwargs[name])
            if (kwargs.get('seed') is not None):
                kwargs['seed'] = int(kwargs['seed'])
            for name in cls.REQUIRED + ('peer', 'responseMode'):
                if (kwargs.get(name) is not None):
                    kwargs[name] = str(kwargs[name]).strip()
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f'bad parameter value: {e}') from e

        return cls(**kwargs)

    #--------------------------------------------------------------------------
    @classmethod
    def fromSdf(cls, text:str)->Self:
        """
        Build configuration from SDF plugin XML.


        Parameters
        ----------
        text : str
            XML text of a <plugin> element, or any document containing one.
            Each parameter is a child element, e.g. <sigma>0.5</sigma>.


        Returns
        -------
        config : TransponderConfig


        Examples
        --------
        >>> TransponderConfig.fromSdf('''
        ... <plugin name="transponder" filename="libtransponderPlugin.so">
        ...   <namespace>usbl</namespace>
        ...   <transponder_device>transponder</transponder_device>
        ...   <transponder_ID>1</transponder_ID>
        ...   <transceiver_device>transceiver</transceiver_device>
        ...   <transceiver_ID>168</transceiver_ID>
        ...   <sigma>0.5</sigma>
        ... </plugin>''')
        """

        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise ConfigurationError(f'malformed SDF: {e}') from e

        plugin = root if (root.tag == 'plugin') else root.find('.//plugin')
        if (plugin is None):
            raise ConfigurationError('no <plugin> element in SDF')

        params = {child.tag:(child.text or '').strip() for child in plugin}
        return cls.fromDict(params)

    #--------------------------------------------------------------------------
    def asDict(self)->Dict[str,Any]:
        """Attribute-name dictionary of this configuration."""
        return asdict(self)

    #--------------------------------------------------------------------------
    @classmethod
    def _sdfName(cls, name:str)->str:
        for sdf, attr in cls.SDF_NAMES.items():
            if (attr == name):
                return sdf
        return name

###############################################################################

def checkCommand(command:str)->None:
    """
    Validate an interrogation payload.

    Parameters
    ----------
    command : str
        Ping payload. Comparison is exact and case-sensitive.

    Raises
    ------
    UnknownCommand
        If command is not 'ping'.
    """

    if (command != PING):
        raise UnknownCommand(f'unknown command {command!r}')

###############################################################################

class Transponder:
    """
    Acoustic timing and response model of one transponder.

    Holds the environmental state, computes propagation delay from the self
    and peer positions, runs the interrogation/response protocol, and applies
    the noise model to reported positions. Inbound handlers may be called from
    any thread.


    Parameters
    ----------
    config : TransponderConfig
        Validated configuration.
    probe : PositionProbe
        Source of self and peer positions.
    telemetry : callable, optional
        Called with the noisy (3,) position at the end of every cycle.
    response : callable, optional
        Called with the CommandResponse of every command request.
    noise : PositionNoise, optional
        Noise model. Default built from config mu, sigma, seed.
    sleep : callable, default=time.sleep
        Wait function used for the propagation delay.
    clock : callable, default=time.monotonic
        Time source for response deadlines.


    Attributes
    ----------
    identity : Identity
        Node identity. Read-only.
    environment : Environment
        Temperature and cached sound speed.
    noise : PositionNoise
        Telemetry noise model.
    state : ProtocolState
        Current interrogation state. Read-only.
    stats : dict
        Counters: 'pingsAccepted', 'pingsIgnored', 'pingsDropped',
        'telemetrySent', 'commandsAnswered'.


    Methods
    -------
    onTemperatureUpdate(temperature)
        Store temperature and recompute sound speed.
    onInterrogationPing(kind, command, peerName)
        Start an interrogation cycle.
    onCommandRequest(commandID, transponderID, payload)
        Answer a structured command immediately.
    propagationDelay(peerName)
        Range-based delay to the peer at the current moment.
    sendLocation()
        Query, perturb, and emit the current self position.
    start(), stop(wait)
        Start and stop the responder thread (worker mode).


    Examples
    --------
    >>> from usblsim.navigation import StaticProbe
    >>> cfg = TransponderConfig('usbl', 'transponder', '1',
    ...                         'transceiver', 'tx_3', responseMode='blocking')
    >>> probe = StaticProbe([0, 0, 0], {'box': [1540.4, 0, 0]})
    >>> xpdr = Transponder(cfg, probe, telemetry=print)
    >>> xpdr.onInterrogationPing(InterrogationKind.INDIVIDUAL, 'ping')
    """

    ## Constructor ===========================================================#
    def __init__(self,
                 config:TransponderConfig,
                 probe:PositionProbe,
                 telemetry:Optional[TelemetrySink] = None,
                 response:Optional[ResponseSink] = None,
                 noise:Optional[PositionNoise] = None,
                 sleep:Callable[[float], None] = time.sleep,
                 clock:Callable[[], float] = time.monotonic,
                 )->None:

        self.config = config
        self.probe = probe
        self._identity = config.identity
        self._telemetry = telemetry
        self._response = response
        self._sleep = sleep
        self._clock = clock

        # Noise and environment
        self.noise = (noise if (noise is not None)
                      else PositionNoise(config.mu, config.sigma, config.seed))
        self.environment = Environment(config.temperature,
                                       self.probe.selfPosition()[2])

        # Protocol state
        self._stateLock = Lock()
        self._startLock = Lock()
        self._inFlight = 0
        self._pending = queue.Queue()
        self._worker = None
        self._serving = False           # responder accepts queued items
        self.stats = {
            'pingsAccepted': 0,         # cycles with a computed delay
            'pingsIgnored': 0,          # unknown commands
            'pingsDropped': 0,          # peer missing / bad environment
            'telemetrySent': 0,         # telemetry messages emitted
            'commandsAnswered': 0,      # command responses built
        }

        # Response strategy
        responseStrategies = {
            'worker': self._respondWorker,
            'blocking': self._respondBlocking,
        }
        self._respond = responseStrategies[config.responseMode]

        log.info('%s: LOADED (peer=%s, mode=%s, c=%.2f m/s, noise=%s)',
                 self.callSign, config.peer, config.responseMode,
                 self.environment.soundSpeed, self.noise)

    ## Properties ============================================================#
    @property
    def identity(self)->Identity:
        """Node identity. Fixed at construction."""
        return self._identity

    @property
    def callSign(self)->str:
        return self._identity.callSign

    @property
    def state(self)->ProtocolState:
        """AWAITING_PROPAGATION_DELAY while any accepted ping is unanswered."""
        with self._stateLock:
            if (self._inFlight > 0):
                return ProtocolState.AWAITING_PROPAGATION_DELAY
            return ProtocolState.IDLE

    @property
    def running(self)->bool:
        """True if the responder thread is alive."""
        return (self._worker is not None) and (self._worker.is_alive())

    ## Inbound Handlers ======================================================#
    def onTemperatureUpdate(self, temperature:float)->float:
        """
        Store a new water temperature and recompute the sound speed.


        Parameters
        ----------
        temperature : float
            Water temperature in degrees Celsius.


        Returns
        -------
        c : float
            New sound speed in m/s.


        Notes
        -----
        The current self Z coordinate is used as depth. A non-positive result
        is stored and reported; the next ping cycle will be dropped. If the
        self body cannot be found the update is logged and skipped, and the
        current sound speed is returned.
        """

        try:
            depth = self.probe.selfPosition()[2]
        except PeerNotFound as e:
            log.error('%s: temperature update skipped - %s', self.callSign, e)
            return self.environment.soundSpeed
        c = self.environment.update(float(temperature), depth)
        log.info('%s: Detected change of temperature, sound speed is now: '
                 '%.2f m/s', self.callSign, c)
        if (c <= 0.0):
            log.warning('%s: Sound speed %.2f m/s is not positive, pings '
                        'will not be answered', self.callSign, c)
        return c

    #--------------------------------------------------------------------------
    def onInterrogationPing(self,
                            kind:InterrogationKind,
                            command:str,
                            peerName:Optional[str] = None,
                            )->bool:
        """
        Start an interrogation cycle.


        Parameters
        ----------
        kind : InterrogationKind
            INDIVIDUAL or COMMON. Both are answered the same way.
        command : str
            Ping payload. Only 'ping' is answered.
        peerName : str, optional
            Body to range against. Default config.peer.


        Returns
        -------
        accepted : bool
            True if a response was scheduled (worker mode) or sent (blocking
            mode). False if the command was ignored or the cycle dropped.


        Notes
        -----
        Never raises for unknown commands, a missing peer, or a bad sound
        speed: each is logged and the cycle is dropped.
        """

        kind = InterrogationKind(kind)

        try:
            checkCommand(command)
        except UnknownCommand:
            log.info('%s: Unknown command %r, ignore', self.callSign, command)
            self._count('pingsIgnored')
            return False

        try:
            delay = self.propagationDelay(peerName)
        except PeerNotFound as e:
            log.error('%s: %s ping dropped - %s', self.callSign,
                      kind.value, e)
            self._count('pingsDropped')
            return False
        except InvalidEnvironment as e:
            log.warning('%s: %s ping dropped - %s', self.callSign,
                        kind.value, e)
            self._count('pingsDropped')
            return False

        if (kind is InterrogationKind.INDIVIDUAL):
            log.info('%s: Received individual ping, responding in %.4fs',
                     self.callSign, delay)
        else:
            log.debug('%s: Received common ping, responding in %.4fs',
                      self.callSign, delay)

        self._count('pingsAccepted')
        self._enter()
        self._respond(delay, kind)
        return True

    #--------------------------------------------------------------------------
    def onCommandRequest(self,
                         commandID:int,
                         transponderID:str,
                         payload:str,
                         )->CommandResponse:
        """
        Answer a structured command request without delay.


        Parameters
        ----------
        commandID : int
            Command ID from the request. Logged only.
        transponderID : str
            Transponder ID from the request. Logged only.
        payload : str
            Request data. Logged only.


        Returns
        -------
        response : CommandResponse
            {data='hi from transponder_<own transponderID>', responseID=1,
            transceiverID=<last digit of own transceiverID>}. Also passed to
            the response sink.
        """

        log.debug('%s: command %s for transponder %s: %r', self.callSign,
                  commandID, transponderID, payload)

        response = CommandResponse(
            data=f'hi from transponder_{self._identity.transponderID}',
            responseID=RESPONSE_ID,
            transceiverID=self._identity.transceiverNumber,
        )
        self._count('commandsAnswered')
        if (self._response is not None):
            self._response(response)
        return response

    ## Methods ===============================================================#
    def propagationDelay(self, peerName:Optional[str] = None)->float:
        """
        One-way propagation delay to the peer at this moment.


        Parameters
        ----------
        peerName : str, optional
            Body to range against. Default config.peer.


        Returns
        -------
        delay : float
            range / soundSpeed in seconds.


        Raises
        ------
        PeerNotFound
            If the peer body does not exist.
        InvalidEnvironment
            If the cached sound speed is not positive.
        """

        peer = peerName if (peerName is not None) else self.config.peer
        selfPos = self.probe.selfPosition()
        peerPos = self.probe.peerPosition(peer)
        rng = distance(selfPos, peerPos)
        return propagationDelay(rng, self.environment.soundSpeed)

    #--------------------------------------------------------------------------
    def sendLocation(self)->NPFltArr:
        """
        Emit the current self position with noise.


        Returns
        -------
        position : ndarray, shape (3,)
            Noisy position passed to the telemetry sink.
        """

        position = self.noise.perturb(self.probe.selfPosition())
        self._count('telemetrySent')
        log.debug('%s: global position (%.3f, %.3f, %.3f)', self.callSign,
                  *position)
        if (self._telemetry is not None):
            self._telemetry(position)
        return position

    #--------------------------------------------------------------------------
    def start(self)->None:
        """Start the responder thread. No effect in blocking mode."""

        if (self.config.responseMode != 'worker'):
            return
        with self._startLock:
            self._startLocked()

    #--------------------------------------------------------------------------
    def stop(self, wait:bool = True, timeout:Optional[float] = None)->None:
        """
        Stop the responder thread.


        Parameters
        ----------
        wait : bool, default=True
            Join the thread. Queued responses are still sent before it exits.
        timeout : float, optional
            Join timeout in seconds.


        Notes
        -----
        Pings accepted after stop() but before the thread exits are answered
        by the same thread. Pings accepted after it exits start a new one.
        """

        with self._startLock:
            if not (self._serving):
                return
            self._pending.put(None)
            worker = self._worker
        if (wait):
            worker.join(timeout)
        log.debug('%s: responder stopped', self.callSign)

    #--------------------------------------------------------------------------
    def join(self, timeout:Optional[float] = None)->bool:
        """
        Wait until every accepted ping has been answered.


        Parameters
        ----------
        timeout : float, optional
            Maximum wait in seconds.


        Returns
        -------
        idle : bool
            True if the transponder is IDLE on return.
        """

        end = None if (timeout is None) else (time.monotonic() + timeout)
        while (self.state is not ProtocolState.IDLE):
            if ((end is not None) and (time.monotonic() >= end)):
                return False
            time.sleep(0.001)
        return True

    #--------------------------------------------------------------------------
    def __str__(self)->str:
        t, c = self.environment.snapshot()
        return (f'{self.callSign} [{self.state.name}] '
                f'T={t:.2f}C c={c:.2f}m/s noise={self.noise}')

    ## Helper Methods ========================================================#
    def _enter(self)->None:
        with self._stateLock:
            self._inFlight += 1

    def _leave(self)->None:
        with self._stateLock:
            self._inFlight -= 1

    def _count(self, key:str)->None:
        with self._stateLock:
            self.stats[key] += 1

    #--------------------------------------------------------------------------
    def _startLocked(self)->None:
        """Start the responder thread. Caller holds _startLock."""

        if (self._serving):
            return
        self._serving = True
        self._worker = Thread(target=self._responderLoop,
                              name=f'{self.callSign}-rspn',
                              daemon=True)
        self._worker.start()
        log.debug('%s: responder started', self.callSign)

    #--------------------------------------------------------------------------
    def _respond(self, delay:float, kind:InterrogationKind)->None:
        """
        Wait out the propagation delay and send the location.

        Notes
        -----
        Assigned during initialization from config.responseMode:

        - 'worker' : _respondWorker
        - 'blocking' : _respondBlocking
        """

        raise NotImplementedError(
            "_respond() method should be assigned during initialization")

    #--------------------------------------------------------------------------
    def _respondBlocking(self, delay:float, kind:InterrogationKind)->None:
        """Sleep in the calling thread, then send the location."""

        try:
            self._sleep(delay)
            self._sendSafely(kind)
        finally:
            self._leave()

    #--------------------------------------------------------------------------
    def _respondWorker(self, delay:float, kind:InterrogationKind)->None:
        """Queue the response for the responder thread."""

        with self._startLock:
            self._pending.put((self._clock() + delay, kind))
            self._startLocked()

    #--------------------------------------------------------------------------
    def _responderLoop(self)->None:
        """
        Send queued responses at their deadlines until stop() is queued.

        After the stop marker the queue is drained without blocking. The exit
        decision is taken under _startLock, so no accepted ping is left in the
        queue without a thread to answer it.
        """

        stopping = False
        while True:
            if (stopping):
                with self._startLock:
                    try:
                        item = self._pending.get_nowait()
                    except queue.Empty:
                        self._serving = False
                        return
            else:
                item = self._pending.get()
            if (item is None):
                stopping = True
                continue
            deadline, kind = item
            try:
                remaining = deadline - self._clock()
                if (remaining > 0.0):
                    self._sleep(remaining)
                self._sendSafely(kind)
            finally:
                self._leave()

    #--------------------------------------------------------------------------
    def _sendSafely(self, kind:InterrogationKind)->None:
        """sendLocation() with per-cycle error containment."""

        try:
            self.sendLocation()
        except PeerNotFound as e:
            log.error('%s: %s response dropped - %s', self.callSign,
                      kind.value, e)
            self._count('pingsDropped')
        except Exception as e:
            log.error('%s: %s response failed - %s', self.callSign,
                      kind.value, e)
            self._count('pingsDropped')

