from typing import Optional

from fastapi import Header, HTTPException, status
from utils import log

logger = log.get_logger(__name__)


async def actor_id_get(x_actor_id: Optional[str] = Header(default=None)) -> str:
    """Actor id verified by the identity gateway in front of this service."""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Actor-Id header")
    return x_actor_id.strip()
