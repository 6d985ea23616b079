"""
Authentication for the analytics management APIs
"""

import logging
from typing import Optional

from fastapi import HTTPException, Query, Request


async def verify_manage_key(
    request: Request,
    sk: Optional[str] = Query(None, description="Management secret key"),
) -> bool:
    """
    Verify the management secret key (FastAPI dependency)

    The expected key is `app.state.manage_key`, taken from ANALYTICS_MANAGE_KEY
    at startup.

    Raises:
        HTTPException: 401 when the key is missing, 403 when it is wrong,
            500 when the server has no key configured
    """
    if not sk:
        logging.warning("Management API called without sk parameter")
        raise HTTPException(status_code=401, detail="Missing management key (sk parameter)")

    expected_sk = getattr(request.app.state, "manage_key", None)
    if not expected_sk:
        logging.error("ANALYTICS_MANAGE_KEY not configured")
        raise HTTPException(status_code=500, detail="Server configuration error: management key not configured")

    if sk != expected_sk:
        logging.warning(f"Invalid management key attempted: {sk[:4]}...")
        raise HTTPException(status_code=403, detail="Invalid management key")

    return True
