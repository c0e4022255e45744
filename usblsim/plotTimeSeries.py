"""
Visualization functions for transponder telemetry.


Functions
---------
plotTelemetry(truePos, reported, name, figNo)
    Plot reported positions against the true track.
plotTelemetryError(times, errors, name, figNo)
    Plot telemetry error magnitude vs time.


Utility Functions
-----------------
cm2inch(value)
    Convert centimeters to inches for figure sizing.


Notes
-----
Default plot parameters (figure size, DPI, legend size) are defined as
module-level globals and can be modified before calling plot functions.
"""

from typing import Optional
from numpy.typing import NDArray
import matplotlib.pyplot as plt
import numpy as np
from usblsim import logger

#-----------------------------------------------------------------------------#

# Type Aliases
NPFltArr = NDArray[np.float64]

# Global Variables
log = logger.addLog('pltTS')

# Plot Parameters
legendSize = 10         # legend size
figSize = [25, 13]      # figure size in cm
dpiValue = 150          # figure dpi value

###############################################################################

def cm2inch(value:float)->float:
    """
    Convert centimeters to inches for matplotlib figure sizing.


    Parameters
    ----------
    value : float
        Length in centimeters.


    Returns
    -------
    inches : float
        Length in inches.
    """

    return value / 2.54

###############################################################################

def plotTelemetry(truePos:NPFltArr,
                  reported:NPFltArr,
                  name:str = 'transponder',
                  figNo:Optional[int] = None,
                  )->plt.Figure:
    """
    Plot reported positions against the true positions of a transponder.


    Parameters
    ----------
    truePos : ndarray, shape (n, 3)
        True positions at the time each report was received.
    reported : ndarray, shape (n, 3)
        Reported (noisy) positions.
    name : str
        Transponder name for the title.
    figNo : int, optional
        Figure number for plot window.


    Returns
    -------
    fig : matplotlib.figure.Figure


    Notes
    -----
    - Creates 2 subplots:

      1. North-East plane (x-y): true track as a line, reports as points
      2. Depth (z) vs report index
    """

    truePos = np.asarray(truePos, dtype=np.float64).reshape(-1, 3)
    reported = np.asarray(reported, dtype=np.float64).reshape(-1, 3)
    if (len(truePos) != len(reported)):
        raise ValueError('truePos and reported must have the same length')
    log.debug('Plotting %d reports for %s', len(reported), name)

    fig = plt.figure(figNo,
                     figsize=(cm2inch(figSize[0]), cm2inch(figSize[1])),
                     dpi=dpiValue)
    fig.suptitle(f'Telemetry: {name}')

    ax1 = fig.add_subplot(1, 2, 1)
    ax1.plot(truePos[:, 0], truePos[:, 1], 'k-')
    ax1.plot(reported[:, 0], reported[:, 1], 'r.')
    ax1.set_xlabel('X (m)')
    ax1.set_ylabel('Y (m)')
    ax1.legend(['True position', 'Reported position'], fontsize=legendSize)
    ax1.axis('equal')
    ax1.grid()

    idx = np.arange(len(reported))
    ax2 = fig.add_subplot(1, 2, 2)
    ax2.plot(idx, truePos[:, 2], 'k-', idx, reported[:, 2], 'r.')
    ax2.set_xlabel('Report')
    ax2.legend(['True Z (m)', 'Reported Z (m)'], fontsize=legendSize)
    ax2.grid()

    return fig

###############################################################################

def plotTelemetryError(times:NPFltArr,
                       errors:NPFltArr,
                       name:str = 'transponder',
                       figNo:Optional[int] = None,
                       )->plt.Figure:
    """
    Plot telemetry error magnitude versus time.


    Parameters
    ----------
    times : ndarray, shape (n,)
        Receive time of each report in seconds.
    errors : ndarray, shape (n,)
        Distance between reported and true position in meters.
    name : str
        Transponder name for the title.
    figNo : int, optional
        Figure number for plot window.


    Returns
    -------
    fig : matplotlib.figure.Figure
    """

    times = np.asarray(times, dtype=np.float64)
    errors = np.asarray(errors, dtype=np.float64)

    fig = plt.figure(figNo,
                     figsize=(cm2inch(figSize[0]), cm2inch(figSize[1])),
                     dpi=dpiValue)
    ax = fig.add_subplot(1, 1, 1)
    ax.plot(times, errors, 'o-')
    if (len(errors)):
        ax.axhline(float(np.mean(errors)), color='k', linestyle='--')
        ax.legend(['Error (m)', f'Mean {np.mean(errors):.2f} m'],
                  fontsize=legendSize)
    ax.set_xlabel('Time (s)', fontsize=12)
    ax.set_title(f'Telemetry error: {name}', fontsize=12)
    ax.grid()

    return fig
