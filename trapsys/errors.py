"""Exception hierarchy for the trap system."""

from __future__ import annotations


class TrapSystemError(Exception):
    """Base class for trap system failures."""


class CommandError(TrapSystemError):
    """A command could not be carried out. The message is shown to the GM."""


class DescriptorError(TrapSystemError, ValueError):
    """A trap descriptor was required but the notes carry none."""
