# Overview: Operator alerts for fiscal failures that need a human (credentials, numbering, exhausted retries).

from __future__ import annotations

import logging

from flask import current_app

from ..extensions import db
from ..models import FiscalAlert
from ..signals import fiscal_alert_raised
from fiscalpos.time_utils import utcnow


logger = logging.getLogger(__name__)


class AlertError(Exception):
    """Raised for alert operation errors."""
    pass


ALERT_RETRIES_EXHAUSTED = "retries_exhausted"
ALERT_CREDENTIALS = "credentials"
ALERT_CONFIGURATION = "configuration"
ALERT_NUMBERING = "numbering"
ALERT_RESOLUTION_NEAR_LIMIT = "resolution_near_limit"
ALERT_VALIDATION_STALLED = "validation_stalled"


def raise_alert(
    alert_type: str,
    message: str,
    *,
    document_type: str | None = None,
    document_id: int | None = None,
    commit: bool = True,
) -> FiscalAlert | None:
    """
    Record an operator alert.

    An unacknowledged alert of the same type for the same document is not
    duplicated; None is returned in that case.

    With commit=False the caller owns the transaction and must call
    announce_alert() after its own commit.
    """
    existing = (
        db.session.query(FiscalAlert)
        .filter_by(
            alert_type=alert_type,
            document_type=document_type,
            document_id=document_id,
            acknowledged_at=None,
        )
        .first()
    )
    if existing:
        return None

    alert = FiscalAlert(
        alert_type=alert_type,
        message=message,
        document_type=document_type,
        document_id=document_id,
        created_at=utcnow(),
    )
    db.session.add(alert)
    db.session.flush()

    logger.error("Fiscal alert [%s] %s#%s: %s", alert_type, document_type, document_id, message)

    if commit:
        db.session.commit()
        announce_alert(alert)
    return alert


def announce_alert(alert: FiscalAlert) -> None:
    fiscal_alert_raised.send(current_app._get_current_object(), alert=alert)


def list_alerts(include_acknowledged: bool = False, limit: int = 100) -> list[FiscalAlert]:
    query = db.session.query(FiscalAlert)
    if not include_acknowledged:
        query = query.filter(FiscalAlert.acknowledged_at.is_(None))
    return query.order_by(FiscalAlert.created_at.desc(), FiscalAlert.id.desc()).limit(limit).all()


def acknowledge_alert(alert_id: int, acknowledged_by: int | None = None) -> FiscalAlert:
    alert = db.session.get(FiscalAlert, alert_id)
    if not alert:
        raise AlertError("Alert not found")
    if alert.acknowledged_at is None:
        alert.acknowledged_at = utcnow()
        alert.acknowledged_by = acknowledged_by
        db.session.commit()
    return alert
