"""
Real Functionality Tests Package.

This package contains tests that verify actual component behavior,
not just mock interactions. Tests focus on:
- SQL queries against a real SQLite database
- Startup wiring and shutdown of the orchestrator
- Configuration validation and the command line

Mock vs Real Strategy:
- Mock: External APIs (X API, Supabase, Telegram)
- Real: Store logic, resolution, orchestration
"""
