"""Request principal resolution."""

from fastapi import Header, HTTPException


def get_owner_id(x_owner_id: str | None = Header(default=None)) -> str:
    """Return the caller's owner id from the X-Owner-Id header (set by the fronting gateway)."""
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail="X-Owner-Id header is required")
    return owner_id
