# File: coshare_booking/__init__.py
"""
Vehicle co-ownership booking core

Reservation conflict detection, priority arbitration, lifecycle management,
recurring generation and late-return fees for shared vehicles.
"""

__version__ = "1.0.0"
