"""
Logging configuration for transponder simulations.

Provides centralized logging setup with custom formatting, shared console and
file handlers, a simulation time field on every record, and helpers for adding
and removing module loggers. The message transport can log to its own file
independently of the main log.


Functions
---------
**Setup Functions:**

    setupMain(fileName, fileFormat, fileLevel, outFormat, outLevel)
        Configure and return main program logger.
    setupComm(name, fileName, file, out)
        Configure and return message transport logger.
    setSimTime(t)
        Update the simulation time stamped on log records.

**Logger Management:**

    addLog(name)
        Create logger that uses main logger handlers.
    noneLog(name)
        Create logger with no handlers (warnings only).
    removeLog(name)
        Remove logger and close unshared handlers.

**Handler Management:**

    addMainHandlers(subLog)
        Add main logger handlers to sublevel logger.
    removeHandlers(name)
        Remove all handlers from logger, closing unshared ones.
    closeHandler(handler)
        Close handler and update global variables.
    deepRemoveHandler(handler)
        Remove handler from all loggers and close it.

**Custom Features:**

    customRecordFactory(args, kwargs)
        Add simulation time field to log records.
    CustomFormatter
        Format log records with bracketed function names and multi-line support.


Global Variables
----------------
log : logging.Logger
    Main logger instance.
consoleHandler : logging.StreamHandler
    Shared console output handler.
fileHandler : logging.FileHandler
    Shared file output handler.
simTime : str
    Current simulation time for log records (seconds, two decimals).


Notes
-----
Module loggers are created at import time with addLog(). Loggers created
before setupMain() are parked in a pending list and receive the main handlers
once they exist. Transponder callbacks run on delivery and responder threads,
so the thread name is part of the file format.
"""

from typing import Optional
from datetime import datetime
import logging
import os

#-----------------------------------------------------------------------------#

# Logging levels
DEBUG = logging.DEBUG           # 10
INFO = logging.INFO             # 20
WARNING = logging.WARNING       # 30
ERROR = logging.ERROR           # 40
CRITICAL = logging.CRITICAL     # 50

# Log record component formats
SIMTIME = '%(simTime)8s'
DATETIME = '%(asctime)s'
NAME  = '%(name)-6s'
LEVEL = '%(levelname)-7s'
THREAD = '%(threadName)-12s'
FUNCTION = '%(funcName)s'
MESSAGE = '%(message)s'

# Delimiter strings
CS = ' : '      # Colon with spaces
RAB = '>'       # Right angle bracket
P = '|'         # Pipe
S = ' '         # Space

# Formatting strings
FMT_DATE = '%H:%M:%S'
FMT_OUT = P+SIMTIME+P+S+NAME+CS+LEVEL+S+RAB+S+MESSAGE
FMT_FILE = (P+SIMTIME+S+DATETIME+P+S+NAME+S+LEVEL+S+THREAD+S+FUNCTION+CS+
            MESSAGE)

# Main logger name
MAIN_LOG = 'usblsim'

# Global variables -----------------------------------------------------------#

# Main logger and main handlers
log = None
consoleHandler = None
fileHandler = None

# Register loggers needing main handlers
pending = []

# Custom logging
oldFactory = logging.getLogRecordFactory()  # Cache for original record factory
simTime = '0.00'                            # Initial value of custom field

###############################################################################

class CustomFormatter(logging.Formatter):
    """
    Log formatter with bracketed function names and multi-line support.

    Function names are wrapped in brackets and padded. When a message contains
    newlines, the record prefix is repeated at the start of every line so that
    multi-line reports stay aligned in the log.


    Parameters
    ----------
    fmt : str, optional
        Log record format string.
    datefmt : str, optional
        Date/time format string.
    """

    def __init__(self, fmt:str=None, datefmt:str=None)->None:
        super().__init__(fmt, datefmt)

    def format(self, record):
        """
        Apply custom formatting to log record.


        Parameters
        ----------
        record : logging.LogRecord
            Log record to format.


        Returns
        -------
        formatted : str
            Formatted log message string.
        """

        # Wrap function name in brackets with white space padding
        if not (record.funcName.startswith("[")):
            func = f"[{record.funcName}]"
            record.funcName = f"{func:24}"

        # Records made outside customRecordFactory lack simTime
        if not (hasattr(record, 'simTime')):
            record.simTime = simTime

        # Repeat log prefix after each newline in the message
        newline = '\n'
        message = record.getMessage()
        if (newline in message):
            record = logging.makeLogRecord(record.__dict__)
            prefixFmt, _, _ = self._fmt.partition(MESSAGE)
            if (DATETIME in prefixFmt):
                record.asctime = self.formatTime(record, self.datefmt)
            prefix = prefixFmt % record.__dict__
            record.msg = (newline + prefix).join(message.split(newline))
            record.args = None

        return super().format(record)

###############################################################################

def customRecordFactory(*args, **kwargs):
    """
    Create log record with custom simTime field.


    Returns
    -------
    record : logging.LogRecord
        Log record with simTime attribute from global simTime variable.
    """

    record = oldFactory(*args, **kwargs)
    record.simTime = simTime
    return record

###############################################################################

def setSimTime(t:float)->None:
    """Set the simulation time (seconds) stamped onto new log records."""

    global simTime
    simTime = f'{t:.2f}'

###############################################################################

def addMainHandlers(subLog:logging.Logger)->None:
    """
    Add main logger handlers (console, file) to sublevel logger.


    Parameters
    ----------
    subLog : logging.Logger
        Logger to receive main handlers.


    Notes
    -----
    Only adds handlers that exist and are not already attached.
    """

    for handler in (consoleHandler, fileHandler):
        if ((handler is not None) and (handler not in subLog.handlers)):
            subLog.addHandler(handler)
    subLog.debug('%s logger activated', subLog.name)

###############################################################################

def setupMain(fileName:Optional[str] = MAIN_LOG+'.log',
              fileFormat:Optional[str] = FMT_FILE,
              fileLevel:int = DEBUG,
              outFormat:Optional[str] = FMT_OUT,
              outLevel:int = INFO,
              )->logging.Logger:
    """
    Configure and return main program logger with console and file handlers.


    Parameters
    ----------
    fileName : str, default='usblsim.log'
        Log file name. If None, file output disabled.
    fileFormat : str, optional
        Format string for file handler. If None, file output disabled.
    fileLevel : int, default=DEBUG
        Minimum log level for file handler.
    outFormat : str, optional
        Format string for console handler. If None, console output disabled.
    outLevel : int, default=INFO
        Minimum log level for console handler.


    Returns
    -------
    log : logging.Logger
        Main logger instance with configured handlers.


    Notes
    -----
    - Sets custom log record factory for simulation time field.
    - Processes pending loggers that were created before main logger setup.
    - Calling again after the main logger exists returns it unchanged.
    """

    global log, consoleHandler, fileHandler

    if (log is None):

        # Create main logger
        logging.setLogRecordFactory(customRecordFactory)
        log = logging.getLogger(MAIN_LOG)
        log.setLevel(DEBUG)

        # Create standard out console handler
        if (outFormat is not None):
            if (consoleHandler is None):
                consoleHandler = logging.StreamHandler()
                consoleHandler.set_name('Console handler')
                consoleHandler.setLevel(outLevel)
                consoleHandler.setFormatter(CustomFormatter(outFormat))
            log.addHandler(consoleHandler)
            log.info('Console logging started')

        # Create main file handler
        if ((fileFormat is not None) and (fileName is not None)):
            if (fileHandler is None):
                fileHandler = logging.FileHandler(fileName)
                fileHandler.set_name('File handler')
                fileHandler.setLevel(fileLevel)
                fileHandler.setFormatter(CustomFormatter(fileFormat,
                                                         FMT_DATE))
            log.addHandler(fileHandler)
            start = datetime.now().strftime("%m/%d/%Y %H:%M:%S")
            log.info('File logging started at %s in %s',
                     start, os.path.basename(fileName))

        # Give pending loggers the main handlers
        while pending:
            name = pending.pop()
            addMainHandlers(logging.getLogger(name))

    return log

###############################################################################

def addLog(name:str)->logging.Logger:
    """
    Create logger that shares main logger handlers.


    Parameters
    ----------
    name : str
        Logger name.


    Returns
    -------
    logger : logging.Logger
        New or existing logger with main handlers.


    Notes
    -----
    - If main logger not yet created, logger is added to pending list.
    - Returns existing logger if name already registered.
    """

    if (name in logging.Logger.manager.loggerDict):
        return logging.getLogger(name)

    thisLog = logging.getLogger(name)
    thisLog.setLevel(DEBUG)

    if (log is None):
        pending.append(name)
    else:
        addMainHandlers(thisLog)

    return thisLog

###############################################################################

def noneLog(name:str)->logging.Logger:
    """
    Create or configure logger with no handlers.


    Parameters
    ----------
    name : str
        Logger name.


    Returns
    -------
    logger : logging.Logger
        Logger with no handlers. WARNING+ messages go to stderr through the
        logging last resort handler.
    """

    global log

    thisLog = logging.getLogger(name)
    thisLog.setLevel(WARNING)

    if (thisLog.handlers):
        if (thisLog is log):
            while thisLog.handlers:
                deepRemoveHandler(thisLog.handlers[0])
        else:
            removeHandlers(name)

    if (name == MAIN_LOG):
        log = thisLog

    return thisLog

###############################################################################

def closeHandler(handler:logging.Handler)->None:
    """
    Close handler and clear the matching global handler variable.


    Parameters
    ----------
    handler : logging.Handler
        Handler to close.
    """

    global consoleHandler, fileHandler

    handler.close()

    if (handler is consoleHandler):
        consoleHandler = None
    elif (handler is fileHandler):
        fileHandler = None

###############################################################################

def _isShared(handler:logging.Handler)->bool:
    """True if any registered logger still holds the handler."""

    for l in logging.Logger.manager.loggerDict.values():
        if (isinstance(l, logging.Logger) and (handler in l.handlers)):
            return True
    return False

###############################################################################

def removeHandlers(name:str)->None:
    """
    Remove all handlers from logger, closing unshared ones.


    Parameters
    ----------
    name : str
        Logger name.
    """

    thisLog = logging.getLogger(name)

    while thisLog.handlers:
        handler = thisLog.handlers[0]
        thisLog.removeHandler(handler)
        if not (_isShared(handler)):
            closeHandler(handler)

###############################################################################

def deepRemoveHandler(handler:logging.Handler)->None:
    """
    Remove handler from all loggers and close it.


    Parameters
    ----------
    handler : logging.Handler
        Handler to remove and close.
    """

    for thisLog in list(logging.Logger.manager.loggerDict.values()):
        if (isinstance(thisLog, logging.Logger) and
            (handler in thisLog.handlers)):
            thisLog.removeHandler(handler)

    closeHandler(handler)

###############################################################################

def removeLog(name:str)->None:
    """
    Remove logger and close unshared handlers.


    Parameters
    ----------
    name : str
        Logger name to remove.


    Notes
    -----
    - Handlers shared with other loggers are not closed.
    - If removing main logger, sets global log to None.
    """

    global log

    thisLog = logging.getLogger(name)
    removeHandlers(name)
    del logging.Logger.manager.loggerDict[name]
    if (thisLog is log):
        log = None

###############################################################################

def setupComm(name:str = 'comm',
              fileName:Optional[str] = 'comm.log',
              file:bool = True,
              out:bool = True,
              )->logging.Logger:
    """
    Configure and return message transport logger.


    Parameters
    ----------
    name : str, default='comm'
        Logger name.
    fileName : str, default='comm.log'
        Transport log file name.
    file : bool, default=True
        Enable separate transport log file.
    out : bool, default=True
        Enable console output for transport logs.


    Returns
    -------
    commLog : logging.Logger
        Transport logger with configured handlers.


    Notes
    -----
    - Existing handlers on the logger are removed first, so the call can be
      repeated to change the configuration.
    - If the transport logger writes its own file, its records are not
      written to the main log file.
    """

    commLog = logging.getLogger(name)
    commLog.setLevel(DEBUG)
    removeHandlers(name)
    if (name in pending):
        pending.remove(name)

    if ((out) and (consoleHandler is not None)):
        commLog.addHandler(consoleHandler)

    if (file):
        commFileHandler = logging.FileHandler(fileName)
        commFileHandler.set_name('Comms file handler')
        if (fileHandler is not None):
            commFileHandler.setLevel(fileHandler.level)
        else:
            commFileHandler.setLevel(DEBUG)
        commFileHandler.setFormatter(CustomFormatter(FMT_FILE, FMT_DATE))
        commLog.addHandler(commFileHandler)
        start = datetime.now().strftime("%m/%d/%Y %H:%M:%S")
        commLog.info('Comms file logging started at %s in %s',
                     start, os.path.basename(fileName))
    elif (fileHandler is not None):
        commLog.addHandler(fileHandler)

    commLog.info('%s logger activated', name)
    return commLog
