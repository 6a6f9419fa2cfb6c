"""
Integration Tests Package.

This package contains integration tests that verify
component interactions with mocked external APIs.

Tests verify:
- Command to delivery flow with a fake X API
- Stream rebuilds driven by subscription changes
"""
