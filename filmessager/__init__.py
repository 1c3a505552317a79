"""Message selection, signing, publishing and chain-state tracking for a Filecoin-style message service."""

__version__ = "0.1.0"