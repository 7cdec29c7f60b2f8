"""Best-effort audit trail writes"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger('ClanHub')

async def write_audit(audit_repo, action: str, actor_id: Optional[str],
                      target_id: Optional[str] = None,
                      details: Optional[Dict[str, Any]] = None) -> bool:
    """Append an audit entry; a failed write is logged and never fails the caller"""
    try:
        await audit_repo.log(action, actor_id, target_id, details or {})
        return True
    except Exception as e:
        logger.error(f"Audit write failed for {action} (actor={actor_id}): {e}")
        return False
