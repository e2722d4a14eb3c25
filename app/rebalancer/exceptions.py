"""
Custom exceptions for the yield rebalancer.
"""


class RebalancerError(Exception):
    """Base exception for all rebalancer errors."""


class ConfigError(RebalancerError):
    """Raised for configuration and registry errors. Aborts a cycle."""


class ReadUnavailableError(RebalancerError):
    """Raised when a chain, adapter or external yield source cannot be read."""


class ExecutionSubmitError(RebalancerError):
    """Raised when a state-changing call cannot be built, signed or sent."""


class ExecutionConfirmError(RebalancerError):
    """Raised when a submitted call cannot be confirmed or reverted on-chain."""


class BridgeError(RebalancerError):
    """Raised for errors talking to the bridge relay."""


class InvalidTransitionError(RebalancerError):
    """Raised when an execution outcome is moved to a state it cannot reach."""
