"""
USBLsim: Acoustic Transponder Simulation for Underwater Positioning

Simulates the transponder side of an ultra-short baseline (USBL) positioning
system: transponders answer interrogation pings after the acoustic
propagation delay with a noisy estimate of their own position.

Modules
-------
environment : Sound speed and propagation delay
navigation : Position probes and telemetry noise
transponder : Transponder configuration and protocol core
communication : Topics, binary messages and message bus
simulator : Host world and scenario driver
plotTimeSeries : Telemetry plotting utilities
logger : Logging configuration and utilities
errors : Exception types

Examples
--------
### Single transponder on a moving body:

>>> import usblsim as us
>>>
>>> world = us.World()
>>> world.addBody('box', [0, 0, 0])
>>> world.addBody('beacon', [150, 40, -25], velocity=[0.5, 0, 0])
>>>
>>> cfg = us.TransponderConfig('usbl', 'transponder', '1',
...                            'transceiver', 'transceiver_1', sigma=0.5)
>>> sim = us.Simulator('Survey', sampleTime=0.05, world=world)
>>> sim.addTransponder(cfg, 'beacon')
>>> sim.run(10.0)
>>> sim.close()
"""

# Core modules - import for direct access
from . import communication
from . import environment
from . import errors
from . import logger
from . import navigation
from . import plotTimeSeries
from . import simulator
from . import transponder

# Classes and functions for convenience
from .simulator import Simulator, World, Body
from .transponder import Transponder, TransponderConfig
from .communication import MessageBus, TransponderNode, Transceiver

# Version info
__version__ = "0.1.0"

# Define what gets imported with "from usblsim import *"
__all__ = [
    # Modules
    'communication',
    'environment',
    'errors',
    'logger',
    'navigation',
    'plotTimeSeries',
    'simulator',
    'transponder',
    # Main classes
    'Simulator',
    'World',
    'Body',
    'Transponder',
    'TransponderConfig',
    'MessageBus',
    'TransponderNode',
    'Transceiver',
]
