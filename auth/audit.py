"""
auth/audit.py -- Thin writer for the append-only audit ledger.

Services call record() for every security-relevant outcome. The ledger is
write-only from the core; list_audit_logs() on the store exists for admins and
tests. Plaintext secrets and raw emails never go into `details`: callers pass
core.crypto.mask_email() output where an address is useful.
"""

from __future__ import annotations

import logging
from typing import Any

from auth.models import AuditAction, AuditLog, AuditStatus, ClientInfo
from auth.store import CredentialStore

logger = logging.getLogger("authvault.auth.audit")


def record(
    store: CredentialStore,
    action: AuditAction,
    status: AuditStatus,
    user_id: int | None = None,
    client: ClientInfo | None = None,
    resource_id: str | int | None = None,
    **details: Any,
) -> None:
    client = client or ClientInfo()
    store.append_audit_log(
        AuditLog(
            action=action,
            status=status,
            user_id=user_id,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details or None,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
    )
    logger.info("audit %s %s user=%s", action.value, status.value, user_id)
