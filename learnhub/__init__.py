"""
Backend package for the learning platform API.

This package provides a FastAPI application over PostgreSQL with Privy
authentication, Stripe payments and a startup migration runner.
"""

__version__ = "0.1.0"
