"""
Unit Tests Package for the Booking Core

Unit tests exercise one component at a time: value objects, aggregates,
strategies, settings, DTOs and the infrastructure adapters with mocked
clients.
"""
