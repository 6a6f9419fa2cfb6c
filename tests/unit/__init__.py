"""
Unit Tests Package.

Mock-based tests for single components: parsing, classification,
the reload state machine, fan-out and the command handlers.
"""
