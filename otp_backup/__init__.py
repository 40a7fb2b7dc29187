"""Encrypted WebDAV backups for a personal OTP vault."""

__version__ = "1.0.0"
