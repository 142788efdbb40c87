"""Topic management, materialized table views, state signals, test stand-ins and WSGI front-ends."""

__version__ = "0.1.0"