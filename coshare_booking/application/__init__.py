# File: coshare_booking/application/__init__.py
