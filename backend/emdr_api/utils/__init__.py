"""Small helpers (dates, pagination, storage, webhook signing)."""
