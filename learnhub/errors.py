"""
Exception types shared across the service.
"""

from __future__ import annotations


class LearnhubError(Exception):
    """Base class for errors raised by learnhub."""


class ConfigurationError(LearnhubError):
    """The process environment failed validation."""


class MigrationError(LearnhubError):
    """A schema migration could not be applied."""


class AuthenticationError(LearnhubError):
    """An access token was missing, malformed or rejected."""


class WebhookVerificationError(LearnhubError):
    """A Stripe webhook payload or signature was rejected."""
