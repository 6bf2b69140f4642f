"""
Garage Door Monitor

Watches a single door sensor and, while it reports "open", runs a durable,
timer-paced workflow that re-checks the door and sends a text message until
the door closes or the retry limit is reached.
"""

__version__ = "1.0.0"
