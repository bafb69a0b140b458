"""
Bureau Monitor - Bureau Connections

Admin-managed connection settings per bureau (API URL, client id, subscriber
and member codes). The client secret is never stored: the row keeps a
reference name and the secret itself stays in the environment.

Stored connections are reported alongside the live/sandbox availability.
"""
import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import BureauConnectionDB, utcnow
from ...models.ssot import Bureau
from .adapters import BureauAvailability, load_bureau_config
from .sinks import AuditSink, DbAuditSink

logger = logging.getLogger(__name__)


def secret_ref(bureau: Bureau) -> str:
    return f"bureau_{Bureau(bureau).value}_secret"


def connection_to_dict(row: Optional[BureauConnectionDB]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    credentials = row.credentials or {}
    return {
        "connection_id": row.id,
        "bureau": row.bureau,
        "api_url": row.api_url,
        "client_id": credentials.get("client_id"),
        "client_secret_ref": credentials.get("client_secret_ref"),
        "subscriber_code": credentials.get("subscriber_code"),
        "member_number": credentials.get("member_number"),
        "is_active": bool(row.is_active),
        "last_test_at": row.last_test_at,
        "last_test_status": row.last_test_status,
        "updated_by": row.updated_by,
        "updated_at": row.updated_at,
    }


class BureauConnectionService:

    def __init__(self, db: Session, audit_sink: Optional[AuditSink] = None):
        self.db = db
        self.audit_sink = audit_sink or DbAuditSink()

    def get(self, bureau: Bureau) -> Optional[BureauConnectionDB]:
        return self.db.query(BureauConnectionDB).filter(
            BureauConnectionDB.bureau == Bureau(bureau).value
        ).first()

    def save(
        self,
        bureau: Bureau,
        updated_by: str,
        api_url: Optional[str] = None,
        client_id: Optional[str] = None,
        subscriber_code: Optional[str] = None,
        member_number: Optional[str] = None,
    ) -> BureauConnectionDB:
        """
        Create or replace the connection for a bureau and write an audit entry.

        api_url defaults to the configured provider URL.
        """
        bureau = Bureau(bureau)
        row = self.get(bureau)
        if row is None:
            row = BureauConnectionDB(id=str(uuid4()), bureau=bureau.value)
            self.db.add(row)

        row.api_url = api_url or load_bureau_config()[bureau].base_url
        row.credentials = {
            "client_id": client_id,
            "client_secret_ref": secret_ref(bureau),
            "subscriber_code": subscriber_code,
            "member_number": member_number,
        }
        row.is_active = True
        row.updated_by = updated_by
        row.updated_at = utcnow()
        self.db.flush()

        self.audit_sink.record(
            self.db, updated_by, "bureau_connection_updated", row.id,
            f"Updated {bureau.value} connection credentials",
            entity_type="bureau_connection",
        )
        self.db.commit()

        logger.info(f"Bureau connection saved: {bureau.value} by {updated_by}")
        return row

    def status(self, availability: List[BureauAvailability]) -> List[Dict[str, Any]]:
        """Availability per bureau, enriched with the stored connection (or None)."""
        rows = {row.bureau: row for row in self.db.query(BureauConnectionDB).all()}
        return [
            {
                "bureau": a.bureau.value,
                "name": a.name,
                "configured": a.configured,
                "mode": a.mode,
                "base_url": a.base_url,
                "connection": connection_to_dict(rows.get(a.bureau.value)),
            }
            for a in availability
        ]
