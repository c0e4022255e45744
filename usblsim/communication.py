"""
Topic wiring and binary messages for the transponder network.

Connects a Transponder to the rest of the simulation through named topics on
an in-process publish/subscribe bus. Messages are packed with the construct
library and carry a 4-byte type flag so receivers can validate them before
parsing.


Classes
-------
MessageBus
    In-process publish/subscribe transport with one delivery thread per
    subscription.
Subscription
    Handle returned by MessageBus.subscribe().
TransponderNode
    Transponder bound to its inbound and outbound topics.
Transceiver
    Peer side: sends pings, temperature and commands, collects replies.


Functions
---------
**Topics:**
    topicNames(identity) : Map of topic key to topic name.

**Message Structures:**
    getMsgStruct(msgType) : Construct Struct for a message type.

**Serialization:**
    writePing(command) : Build PING message.
    writeTemperature(temperature) : Build TEMP message.
    writeCommandRequest(commandID, transponderID, data) : Build CMRQ message.
    writeCommandResponse(response) : Build CMRS message.
    writeGlobalPosition(position) : Build GPOS message.

**Parsing:**
    readPing(bytesMsg) : Command string of a PING message.
    readTemperature(bytesMsg) : Temperature of a TEMP message.
    readCommandRequest(bytesMsg) : Fields of a CMRQ message.
    readCommandResponse(bytesMsg) : CommandResponse of a CMRS message.
    readGlobalPosition(bytesMsg) : Position of a GPOS message.

**Dispatch:**
    recvMsgCallback(bytesMsg, node, topicKey) : Validate and route an inbound
    message on a TransponderNode.


Notes
-----
**Topics** (ns = namespace):

.. code-block:: none

    individual_ping   /ns/<transponderDevice>_<transponderID>/individual_interrogation_ping
    common_ping       /ns/common_interrogation_ping
    temperature       /ns/<transponderDevice>_<transponderID>/temperature
    command_request   /ns/<transponderDevice>_<transponderID>/command_request
    command_response  /ns/<transceiverDevice>_<transceiverID>/command_response
    global_position   /ns/<transceiverDevice>_<transponderID>/global_position

Malformed inbound messages are logged and dropped. Nothing raised by a
handler reaches a delivery thread.
"""

from __future__ import annotations
from functools import lru_cache
from threading import Thread, Lock, Condition
from typing import Callable, Dict, List, Optional, Tuple, TYPE_CHECKING
from numpy.typing import NDArray
if (TYPE_CHECKING):
    from usblsim.navigation import PositionProbe
import construct as cst
import numpy as np
import queue
import time
from usblsim.transponder import (Transponder, TransponderConfig, Identity,
                                 CommandResponse, InterrogationKind)
from usblsim import logger

#-----------------------------------------------------------------------------#

# Type Aliases
NPFltArr = NDArray[np.float64]
MsgCallback = Callable[[bytes], None]

# Global Variables
log = logger.setupComm(file=False)
FLAG_SIZE = 4

###############################################################################

def topicNames(identity:Identity)->Dict[str,str]:
    """
    Build the topic names of one transponder.


    Parameters
    ----------
    identity : Identity
        Transponder identity.


    Returns
    -------
    topics : dict
        Keys 'individual_ping', 'common_ping', 'temperature',
        'command_request', 'command_response', 'global_position'.


    Notes
    -----
    The global position topic combines the transceiver device with the
    transponder ID, so each transponder of a transceiver has its own
    position topic.
    """

    ns = identity.namespace
    xpdr = f'{identity.transponderDevice}_{identity.transponderID}'
    return {
        'individual_ping': f'/{ns}/{xpdr}/individual_interrogation_ping',
        'common_ping': f'/{ns}/common_interrogation_ping',
        'temperature': f'/{ns}/{xpdr}/temperature',
        'command_request': f'/{ns}/{xpdr}/command_request',
        'command_response':
            f'/{ns}/{identity.transceiverDevice}_{identity.transceiverID}'
            '/command_response',
        'global_position':
            f'/{ns}/{identity.transceiverDevice}_{identity.transponderID}'
            '/global_position',
    }

###############################################################################

@lru_cache(maxsize=12)
def getMsgStruct(msgType:str)->Optional[cst.Struct]:
    """
    Return binary message structure for serialization/parsing.


    Parameters
    ----------
    msgType : str
        Flag ('PING', 'TEMP', 'CMRQ', 'CMRS', 'GPOS') or alias ('INTERROGATION',
        'TEMPERATURE', 'COMMAND-REQUEST', 'COMMAND-RESPONSE',
        'GLOBAL-POSITION'). Case-insensitive.


    Returns
    -------
    cst.Struct or None
        Structure with .build(dict) and .parse(bytes). None if msgType is not
        known.


    Notes
    -----
    **Message Structures:**

    .. code-block:: none

        PING (INTERROGATION):
        {
            'type': b'PING',                 # 4 bytes - Const type flag
            'command': str,                  # VarInt length + UTF-8
        }

        TEMP (TEMPERATURE) - 12 bytes:
        {
            'type': b'TEMP',                 # 4 bytes
            'temperature': float,            # 8 bytes - Degrees C
        }

        CMRQ (COMMAND-REQUEST):
        {
            'type': b'CMRQ',                 # 4 bytes
            'command_id': int,               # 4 bytes - Signed
            'transponder_id': str,           # VarInt length + UTF-8
            'data': str,                     # VarInt length + UTF-8
        }

        CMRS (COMMAND-RESPONSE):
        {
            'type': b'CMRS',                 # 4 bytes
            'data': str,                     # VarInt length + UTF-8
            'response_id': int,              # 4 bytes - Signed
            'transceiver_id': int,           # 4 bytes - Signed
        }

        GPOS (GLOBAL-POSITION) - 28 bytes:
        {
            'type': b'GPOS',                 # 4 bytes
            'position': [x, y, z],           # 24 bytes - 3x float64
        }

    All numeric fields are little endian. Every structure starts with a
    Const() flag so parsing a message of the wrong type fails.


    References
    ----------
    [1] construct library: https://construct.readthedocs.io/
    """

    # Define Field Formats
    fltType = cst.Float64l                  # double precision
    arrFltType = fltType[3]                 # (x,y,z)
    intType = cst.Int32sl                   # signed integer
    strType = cst.PascalString(cst.VarInt, 'utf8')

    # Define Message Structures
    PING = cst.Struct(
        "type"              / cst.Const(b'PING'),
        "command"           / strType,
    )

    TEMP = cst.Struct(
        "type"              / cst.Const(b'TEMP'),
        "temperature"       / fltType,
    )

    CMRQ = cst.Struct(
        "type"              / cst.Const(b'CMRQ'),
        "command_id"        / intType,
        "transponder_id"    / strType,
        "data"              / strType,
    )

    CMRS = cst.Struct(
        "type"              / cst.Const(b'CMRS'),
        "data"              / strType,
        "response_id"       / intType,
        "transceiver_id"    / intType,
    )

    GPOS = cst.Struct(
        "type"              / cst.Const(b'GPOS'),
        "position"          / arrFltType,
    )

    # Map Message Type to Message Structure
    msgStructures = {
        'PING': PING,
        'INTERROGATION': PING,
        'TEMP': TEMP,
        'TEMPERATURE': TEMP,
        'CMRQ': CMRQ,
        'COMMAND-REQUEST': CMRQ,
        'CMRS': CMRS,
        'COMMAND-RESPONSE': CMRS,
        'GPOS': GPOS,
        'GLOBAL-POSITION': GPOS,
    }

    return msgStructures.get(msgType.upper())

###############################################################################

def writePing(command:str='ping')->bytes:
    """Serialize an interrogation ping carrying command."""
    return getMsgStruct('PING').build({'command': command})

#------------------------------------------------------------------------------
def writeTemperature(temperature:float)->bytes:
    """Serialize a temperature update in degrees Celsius."""
    return getMsgStruct('TEMP').build({'temperature': float(temperature)})

#------------------------------------------------------------------------------
def writeCommandRequest(commandID:int, transponderID:str, data:str)->bytes:
    """Serialize a structured command request."""
    return getMsgStruct('CMRQ').build({
        'command_id': int(commandID),
        'transponder_id': transponderID,
        'data': data,
    })

#------------------------------------------------------------------------------
def writeCommandResponse(response:CommandResponse)->bytes:
    """Serialize a command response."""
    return getMsgStruct('CMRS').build({
        'data': response.data,
        'response_id': response.responseID,
        'transceiver_id': response.transceiverID,
    })

#------------------------------------------------------------------------------
def writeGlobalPosition(position:NPFltArr)->bytes:
    """Serialize a reported (x,y,z) position."""
    return getMsgStruct('GPOS').build({
        'position': [float(p) for p in position],
    })

###############################################################################

def readPing(bytesMsg:bytes)->str:
    return getMsgStruct('PING').parse(bytesMsg).command

#------------------------------------------------------------------------------
def readTemperature(bytesMsg:bytes)->float:
    return float(getMsgStruct('TEMP').parse(bytesMsg).temperature)

#------------------------------------------------------------------------------
def readCommandRequest(bytesMsg:bytes)->Tuple[int,str,str]:
    """Return (commandID, transponderID, data) of a CMRQ message."""
    msg = getMsgStruct('CMRQ').parse(bytesMsg)
    return msg.command_id, msg.transponder_id, msg.data

#------------------------------------------------------------------------------
def readCommandResponse(bytesMsg:bytes)->CommandResponse:
    msg = getMsgStruct('CMRS').parse(bytesMsg)
    return CommandResponse(msg.data, msg.response_id, msg.transceiver_id)

#------------------------------------------------------------------------------
def readGlobalPosition(bytesMsg:bytes)->NPFltArr:
    msg = getMsgStruct('GPOS').parse(bytesMsg)
    return np.array(msg.position, dtype=np.float64)

###############################################################################

class Subscription:
    """
    One subscriber of a MessageBus topic.

    Owns a FIFO queue and the daemon thread that delivers from it, so a slow
    callback only delays its own topic.


    Parameters
    ----------
    topic : str
        Topic name.
    callback : callable
        Called with each message payload (bytes).
    """

    _STOP = object()

    ## Constructor ===========================================================#
    def __init__(self, topic:str, callback:MsgCallback)->None:
        self.topic = topic
        self.callback = callback
        self.queue = queue.Queue()
        self.delivered = 0
        self.thread = Thread(target=self._deliver,
                             name=f'sub{topic}',
                             daemon=True)
        self.thread.start()

    ## Methods ===============================================================#
    def put(self, bytesMsg:bytes)->None:
        self.queue.put(bytesMsg)

    #--------------------------------------------------------------------------
    def close(self, wait:bool=True, timeout:Optional[float]=None)->None:
        """Deliver what is queued, then stop the thread."""
        self.queue.put(self._STOP)
        if (wait):
            self.thread.join(timeout)

    #--------------------------------------------------------------------------
    def _deliver(self)->None:
        while True:
            bytesMsg = self.queue.get()
            try:
                if (bytesMsg is self._STOP):
                    return
                self.callback(bytesMsg)
                self.delivered += 1
            except Exception as e:
                log.error('DELIVERY ERROR on %s: %s', self.topic, str(e))
            finally:
                self.queue.task_done()

###############################################################################

class MessageBus:
    """
    In-process publish/subscribe transport.

    Messages are opaque bytes. Each subscription is delivered in publish
    order on its own thread; there is no ordering across subscriptions.
    Publishing to a topic with no subscribers drops the message.


    Methods
    -------
    subscribe(topic, callback)
        Register callback and start its delivery thread.
    unsubscribe(sub)
        Remove a subscription and stop its thread.
    publish(topic, bytesMsg)
        Queue bytesMsg to every subscriber of topic.
    join()
        Block until every queued message has been delivered.
    close()
        Stop all delivery threads.
    """

    ## Constructor ===========================================================#
    def __init__(self)->None:
        self._subs:Dict[str,List[Subscription]] = {}
        self._lock = Lock()
        self.published = 0

    ## Methods ===============================================================#
    def subscribe(self, topic:str, callback:MsgCallback)->Subscription:
        sub = Subscription(topic, callback)
        with self._lock:
            self._subs.setdefault(topic, []).append(sub)
        log.debug('SUBSCRIBED %s', topic)
        return sub

    #--------------------------------------------------------------------------
    def unsubscribe(self, sub:Subscription, wait:bool=True)->None:
        with self._lock:
            subs = self._subs.get(sub.topic, [])
            if (sub in subs):
                subs.remove(sub)
            if (not subs):
                self._subs.pop(sub.topic, None)
        sub.close(wait)

    #--------------------------------------------------------------------------
    def publish(self, topic:str, bytesMsg:bytes)->int:
        """
        Queue a message to all subscribers of topic.


        Returns
        -------
        n : int
            Number of subscribers the message was queued to.
        """

        with self._lock:
            subs = list(self._subs.get(topic, []))
        for sub in subs:
            sub.put(bytesMsg)
        self.published += 1
        if (not subs):
            log.debug('NO SUBSCRIBERS on %s', topic)
        return len(subs)

    #--------------------------------------------------------------------------
    def topics(self)->List[str]:
        with self._lock:
            return sorted(self._subs)

    #--------------------------------------------------------------------------
    def join(self)->None:
        """Wait until all currently queued messages have been delivered."""
        with self._lock:
            subs = [s for group in self._subs.values() for s in group]
        for sub in subs:
            sub.queue.join()

    #--------------------------------------------------------------------------
    def close(self)->None:
        with self._lock:
            subs = [s for group in self._subs.values() for s in group]
            self._subs.clear()
        for sub in subs:
            sub.close()

###############################################################################

def recvMsgCallback(bytesMsg:bytes, node:TransponderNode, topicKey:str)->None:
    """
    Validate an inbound message and route it to the transponder.


    Parameters
    ----------
    bytesMsg : bytes
        Complete message including the 4-byte type flag.
    node : TransponderNode
        Receiving node.
    topicKey : str
        Key of the topic the message arrived on (see topicNames).


    Notes
    -----
    **Routing Table:**

    - individual_ping : b'PING' -> Transponder.onInterrogationPing(INDIVIDUAL)
    - common_ping : b'PING' -> Transponder.onInterrogationPing(COMMON)
    - temperature : b'TEMP' -> Transponder.onTemperatureUpdate
    - command_request : b'CMRQ' -> Transponder.onCommandRequest

    Empty, short, wrong-flag, and unparsable messages are logged and dropped.
    """

    # Verify Message Integrity
    if (not bytesMsg):
        log.warning('%s: CALLBACK SKIP - EMPTY MESSAGE', node.callSign)
        return

    if (len(bytesMsg) < FLAG_SIZE):
        log.warning('%s: CALLBACK SKIP - SHORT MESSAGE', node.callSign)
        return

    try:
        # Validate Message Type
        flag = bytesMsg[:FLAG_SIZE].decode('ascii')
        expected, recvMessage = node.handlers[topicKey]
        if (flag != expected):
            log.warning('%s: CALLBACK SKIP - BAD FLAG: %s on %s',
                        node.callSign, flag, topicKey)
            return

        log.debug('%s: CALLBACK on %s', node.callSign, flag)
        recvMessage(bytesMsg)

    except UnicodeDecodeError:
        log.warning('%s: CALLBACK SKIP - FLAG DECODE ERROR', node.callSign)

    except cst.ConstructError as e:
        log.warning('%s: CALLBACK SKIP - PARSE ERROR: %s', node.callSign,
                    str(e))

    except Exception as e:
        log.error('%s: CALLBACK SKIP - MESSAGE ERROR: %s', node.callSign,
                  str(e))

###############################################################################

class TransponderNode:
    """
    Transponder attached to a MessageBus.

    Subscribes the four inbound topics, parses each message, and calls the
    matching Transponder handler. Telemetry is published as GPOS on the
    global position topic, command responses as CMRS on the command response
    topic.


    Parameters
    ----------
    bus : MessageBus
        Transport.
    config : TransponderConfig
        Transponder configuration.
    probe : PositionProbe
        Position source of the transponder.
    **kwargs :
        Passed to Transponder (noise, sleep, clock).


    Attributes
    ----------
    transponder : Transponder
        Protocol core.
    topics : dict
        Topic names from topicNames().
    handlers : dict
        Topic key -> (expected flag, handler).
    """

    ## Constructor ===========================================================#
    def __init__(self,
                 bus:MessageBus,
                 config:TransponderConfig,
                 probe:PositionProbe,
                 **kwargs,
                 )->None:

        self.bus = bus
        self.topics = topicNames(config.identity)
        self.transponder = Transponder(config, probe,
                                       telemetry=self.publishPosition,
                                       response=self.publishResponse,
                                       **kwargs)
        self.handlers = {
            'individual_ping': ('PING', self._recvIndividualPing),
            'common_ping': ('PING', self._recvCommonPing),
            'temperature': ('TEMP', self._recvTemperature),
            'command_request': ('CMRQ', self._recvCommandRequest),
        }
        self._subs:List[Subscription] = []

    ## Properties ============================================================#
    @property
    def callSign(self)->str:
        return self.transponder.callSign

    ## Methods ===============================================================#
    def start(self)->None:
        """Subscribe inbound topics and start the responder."""

        if (self._subs):
            return
        for key in self.handlers:
            self._subs.append(self.bus.subscribe(
                self.topics[key],
                lambda msg, key=key: recvMsgCallback(msg, self, key)))
        self.transponder.start()
        log.info('%s: LISTENING on /%s', self.callSign,
                 self.transponder.identity.namespace)

    #--------------------------------------------------------------------------
    def stop(self, wait:bool=True)->None:
        """Unsubscribe, then let queued responses finish."""

        for sub in self._subs:
            self.bus.unsubscribe(sub, wait)
        self._subs = []
        self.transponder.stop(wait)

    #--------------------------------------------------------------------------
    def publishPosition(self, position:NPFltArr)->None:
        self.bus.publish(self.topics['global_position'],
                         writeGlobalPosition(position))

    #--------------------------------------------------------------------------
    def publishResponse(self, response:CommandResponse)->None:
        self.bus.publish(self.topics['command_response'],
                         writeCommandResponse(response))

    ## Receivers =============================================================#
    def _recvIndividualPing(self, bytesMsg:bytes)->None:
        self.transponder.onInterrogationPing(InterrogationKind.INDIVIDUAL,
                                             readPing(bytesMsg))

    def _recvCommonPing(self, bytesMsg:bytes)->None:
        self.transponder.onInterrogationPing(InterrogationKind.COMMON,
                                             readPing(bytesMsg))

    def _recvTemperature(self, bytesMsg:bytes)->None:
        self.transponder.onTemperatureUpdate(readTemperature(bytesMsg))

    def _recvCommandRequest(self, bytesMsg:bytes)->None:
        self.transponder.onCommandRequest(*readCommandRequest(bytesMsg))

###############################################################################

class Transceiver:
    """
    Interrogating side of one transponder link.

    Publishes pings, temperature updates and command requests to the
    transponder's topics and collects the global position and command
    response messages sent back.


    Parameters
    ----------
    bus : MessageBus
        Transport.
    config : TransponderConfig
        Configuration of the transponder to talk to.
    onTelemetry : callable, optional
        Called with each received position.
    onResponse : callable, optional
        Called with each received CommandResponse.


    Attributes
    ----------
    telemetry : list of (float, ndarray)
        (receive time, position) of each global position message.
    responses : list of CommandResponse
        Received command responses.
    """

    ## Constructor ===========================================================#
    def __init__(self,
                 bus:MessageBus,
                 config:TransponderConfig,
                 onTelemetry:Optional[Callable[[NPFltArr], None]] = None,
                 onResponse:Optional[Callable[[CommandResponse], None]] = None,
                 clock:Callable[[], float] = time.monotonic,
                 )->None:

        self.bus = bus
        self.identity = config.identity
        self.topics = topicNames(self.identity)
        self.onTelemetry = onTelemetry
        self.onResponse = onResponse
        self.clock = clock
        self.telemetry:List[Tuple[float,NPFltArr]] = []
        self.responses:List[CommandResponse] = []
        self._cond = Condition()
        self._subs = [
            bus.subscribe(self.topics['global_position'], self._recvPosition),
            bus.subscribe(self.topics['command_response'],
                          self._recvResponse),
        ]

    ## Senders ===============================================================#
    def ping(self, command:str='ping')->None:
        """Individual interrogation of this transponder."""
        self.bus.publish(self.topics['individual_ping'], writePing(command))

    def broadcastPing(self, command:str='ping')->None:
        """Common interrogation of every transponder in the namespace."""
        self.bus.publish(self.topics['common_ping'], writePing(command))

    def sendTemperature(self, temperature:float)->None:
        self.bus.publish(self.topics['temperature'],
                         writeTemperature(temperature))

    def sendCommand(self,
                    commandID:int,
                    data:str = '',
                    transponderID:Optional[str] = None,
                    )->None:
        tid = transponderID if (transponderID is not None) \
              else self.identity.transponderID
        self.bus.publish(self.topics['command_request'],
                         writeCommandRequest(commandID, tid, data))

    ## Waiting ===============================================================#
    def waitTelemetry(self, n:int=1, timeout:Optional[float]=None)->bool:
        """Block until at least n positions have been received."""
        with self._cond:
            return self._cond.wait_for(lambda: len(self.telemetry) >= n,
                                       timeout)

    def waitResponses(self, n:int=1, timeout:Optional[float]=None)->bool:
        """Block until at least n command responses have been received."""
        with self._cond:
            return self._cond.wait_for(lambda: len(self.responses) >= n,
                                       timeout)

    #--------------------------------------------------------------------------
    def close(self)->None:
        for sub in self._subs:
            self.bus.unsubscribe(sub)
        self._subs = []

    ## Receivers =============================================================#
    def _recvPosition(self, bytesMsg:bytes)->None:
        position = readGlobalPosition(bytesMsg)
        with self._cond:
            self.telemetry.append((self.clock(), position))
            self._cond.notify_all()
        if (self.onTelemetry is not None):
            self.onTelemetry(position)

    def _recvResponse(self, bytesMsg:bytes)->None:
        response = readCommandResponse(bytesMsg)
        with self._cond:
            self.responses.append(response)
            self._cond.notify_all()
        if (self.onResponse is not None):
            self.onResponse(response)
