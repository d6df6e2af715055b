"""Top-level application package for the receipt-to-points service.

This package contains everything required to run the FastAPI backend
that turns uploaded receipts into loyalty points. It includes the
database models, Pydantic schemas, the merchant match engine, the
ledger updater, background tasks for post-commit side effects, and the
API routers.

To run the API locally you can execute:

```bash
uvicorn loyalty.api.main:app --reload
```

The default configuration expects ``DATABASE_URL`` to be set. Enable
``DB_DEV_FALLBACK_SQLITE`` to use a local SQLite database stored in
``loyalty.db`` during development.
"""

__all__: list[str] = []
