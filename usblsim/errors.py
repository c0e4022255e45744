"""
Exception types for the transponder node.

Only ConfigurationError is fatal: it is raised while a node is being built and
the node must not start. The others are raised inside a single interrogation
cycle and are caught and logged by the Transponder, which then carries on
serving messages.


Classes
-------
UsblError
    Base class for all package errors.
ConfigurationError
    Missing or invalid construction parameter.
UnknownCommand
    Ping payload other than 'ping'.
PeerNotFound
    Named body is not present in the world.
InvalidEnvironment
    Computed sound speed is not a positive finite number.
"""

###############################################################################

class UsblError(Exception):
    """Base class for usblsim errors."""

###############################################################################

class ConfigurationError(UsblError, ValueError):
    """Missing required field, sigma <= 0, or malformed transceiver ID."""

###############################################################################

class UnknownCommand(UsblError):
    """Interrogation payload is not a recognized command."""

###############################################################################

class PeerNotFound(UsblError, LookupError):
    """Body queried by name does not exist in the world."""

###############################################################################

class InvalidEnvironment(UsblError, ValueError):
    """Sound speed is zero, negative, or not finite."""
