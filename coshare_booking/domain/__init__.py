# File: coshare_booking/domain/__init__.py
