"""
Test Suite for Twitter Watcher.

Structure:
    tests/
    ├── conftest.py          # Shared fixtures and configuration
    ├── unit/                # Mock-based unit tests
    │   ├── test_classifier.py
    │   ├── test_commands.py
    │   ├── test_coordinator.py
    │   ├── test_dispatcher.py
    │   ├── test_resolver.py
    │   ├── test_stream_session.py
    │   ├── test_telegram_client.py
    │   └── test_twitter_client.py
    ├── integration/         # Integration tests (mocked external APIs)
    │   └── test_end_to_end.py
    └── real/                # Real functionality tests
        ├── test_database_real.py
        └── test_bot_orchestration_real.py

Run tests:
    pytest tests/                    # All tests
    pytest tests/unit/               # Unit tests only
    pytest tests/real/               # Real functionality tests only
    pytest tests/integration/        # Integration tests only
    pytest tests/ -v                 # Verbose output
    pytest tests/ -m real            # Tests marked @pytest.mark.real
"""
