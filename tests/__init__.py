"""
Consent Ledger Tests

Unit tests for the access control layer live in tests/unit; the HTTP
integration tests drive the FastAPI app in-process on the in-memory
backend.

Running Tests:
    # Run everything
    pytest tests -v

    # Only the SQL stores (SQLite via aiosqlite)
    pytest tests/unit/test_sql_stores.py -v

    # One scenario
    pytest tests/test_access_integration.py -k break_glass -v
"""
