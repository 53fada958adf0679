import hmac
from typing import Optional

from fastapi import HTTPException

from whatnext.core.config import settings


def verify_admin_key(body_key: Optional[str], header_key: Optional[str] = None) -> None:
    """401 unless the body or X-Admin-Key header carries the shared admin key."""
    provided = body_key or header_key or ""
    expected = settings.admin_key or ""
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
