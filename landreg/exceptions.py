"""
Land Registry Exceptions

Root exception classes shared by every subsystem.
"""


class LandRegistryException(Exception):
    """Base exception for the land registry platform."""
    pass


class InvalidAddressError(LandRegistryException):
    """Invalid account or contract address."""
    pass


class ConfigurationError(LandRegistryException):
    """Configuration error."""
    pass


class ContentPublishError(LandRegistryException):
    """The content-addressed store rejected or could not receive a document."""
    pass
