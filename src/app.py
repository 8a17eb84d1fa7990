"""KAPCDAM Marketplace FastAPI application.

Serves the cart, order, payment and admin APIs over one ``Marketplace``
instance built at startup from environment settings.

Usage:
    uvicorn app:app --app-dir src --host 0.0.0.0 --port 8000 --reload
"""

# ---------------------------------------------------------------------------
# Domain initialization
# ---------------------------------------------------------------------------
# The domain is initialized at module level so uvicorn workers share it.
from marketplace.domain import marketplace  # noqa: E402

marketplace.init()

from marketplace.api.factory import create_app  # noqa: E402

app = create_app()
