"""
Custom exceptions for the CDC relay.

Decode and schema errors are fatal to the conversion call that raised them,
delivery errors are fatal to one drained batch, configuration errors are
fatal at startup. Per-message send failures never surface as exceptions.
"""


class RelayError(Exception):
    """Base error for the relay."""

    pass


class ConfigurationError(RelayError):
    """Missing or malformed settings (endpoints, mapping specs)."""

    pass


class EntryDecodeError(RelayError):
    """Upstream entry payload could not be decoded."""

    pass


class SchemaBuildError(RelayError):
    """Schema could not be derived from a name and field list."""

    pass


class ChannelError(RelayError):
    """Transactional channel misuse or overflow."""

    pass


class DeliveryError(RelayError):
    """A drained batch failed and its read transaction was rolled back."""

    pass
