"""Business directory lookups used by the chat relay.

Listing CRUD and geospatial search live in the directory's REST layer;
the relay only needs to know whether a business exists and who owns it.
"""

from .service import BusinessDirectory

__all__ = ["BusinessDirectory"]
