"""Relay one-time passcodes from the iVAS SMS portal to Telegram."""

__version__ = "0.1.0"
