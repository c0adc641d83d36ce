# File: coshare_booking/infrastructure/__init__.py
