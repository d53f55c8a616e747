"""Top-level package for the LMS billing synchronisation service.

This package keeps the local ``subscriptions`` and ``checkout_sessions``
tables in step with Stripe. It contains the database models, the
service layer that reconciles provider state (webhooks, user-triggered
syncs, the daily expiry sweep and admin grants), Dramatiq tasks and the
FastAPI routers that expose all of it.

To run the API locally you can execute:

```bash
uvicorn lms_billing.api.main:app --reload
```

The default configuration expects ``DATABASE_URL``; set
``DB_DEV_FALLBACK_SQLITE=true`` to use a local ``billing.db`` instead.
"""

__all__: list[str] = []
