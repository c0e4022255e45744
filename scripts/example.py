"""
example.py - Simple Example for USBLsim

Basic workflow for simulating a USBL transponder: build a world with a
surface transceiver body ('box') and a moving beacon, attach a transponder to
the beacon, interrogate it once per second, and plot the reported positions
against the true track.
"""

import matplotlib.pyplot as plt
import usblsim as us

#------------------------------------------------------------------------------#
#    World                                                                     #
#------------------------------------------------------------------------------#

world = us.World()                             # host world of named bodies
world.addBody('box', [0, 0, 0])                # transceiver ship at origin
world.addBody('beacon',                        # transponder carrier
              position=[300, 150, -40],        # 340 m away, 40 m deep
              velocity=[1.5, 0.0, 0.0])        # surveying along x

#------------------------------------------------------------------------------#
#    Transponder                                                               #
#------------------------------------------------------------------------------#

config = us.TransponderConfig.fromDict({       # SDF-style parameter names
    'namespace': 'usbl',
    'transponder_device': 'transponder',
    'transponder_ID': '1',
    'transceiver_device': 'transceiver',
    'transceiver_ID': 'transceiver_1',
    'mu': 0.0,                                 # noise mean (m)
    'sigma': 0.75,                             # noise standard deviation (m)
    'seed': 2024,                              # reproducible noise
})

#------------------------------------------------------------------------------#
#    Simulation                                                                #
#------------------------------------------------------------------------------#

sim = us.Simulator(name='Example',             # create a simulation object
                   sampleTime=0.05,            # 20 Hz world update
                   world=world,
                   pingInterval=1.0)           # interrogate once per second
node = sim.addTransponder(config, 'beacon')    # attach and start transponder

sim.transceivers['transponder_1'].sendTemperature(14.0)   # warmer water

sim.run(20.0)                                  # 20 s in real time
sim.close()

#------------------------------------------------------------------------------#
#    Results                                                                   #
#------------------------------------------------------------------------------#

truePos, reported = sim.positions('transponder_1')
times, errors = sim.telemetryError('transponder_1')
sim.log.info('Mean telemetry error: %.2f m over %d reports',
             errors.mean(), len(errors))

us.plotTimeSeries.plotTelemetry(truePos, reported, 'transponder_1')
us.plotTimeSeries.plotTelemetryError(times, errors, 'transponder_1')
plt.show()
