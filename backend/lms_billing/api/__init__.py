"""API package.

This exposes router modules to simplify test imports like:
	from lms_billing.api.routes.billing import router
"""

__all__ = [
	"routes",
]
