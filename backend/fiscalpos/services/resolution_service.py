# Overview: Service-layer operations for DIAN numbering resolutions; sequential number allocation.

"""
Resolution Allocator

WHY: DIAN authorizes each prefix for a closed numeric range and a validity
window. Numbers must be strictly sequential and a consumed number can never
be handed out again, even if the document that took it is later rejected.

DESIGN PRINCIPLES:
- Resolution is an explicit parameter, selected from configuration per kind
- Allocation is a single conditional UPDATE guarded by a per-resolution lock
- The number is committed (attached to its document) before any gateway call
- last_allocated starts at range_from - 1 and only moves forward
"""

from __future__ import annotations

import logging
from datetime import date

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Resolution
from ..models.fiscal import DOCUMENT_KINDS
from fiscalpos.time_utils import local_today
from .concurrency import KeyedLocks, guarded_update
from .gateway_client import ConfigurationError
from .invoice_payload import TYPE_DOCUMENT_IDS
from . import alert_service


logger = logging.getLogger(__name__)


class ResolutionError(Exception):
    """Raised for resolution and numbering errors."""
    pass


class ExhaustedRange(ResolutionError):
    """Every number of the resolution has been allocated."""


class ExpiredResolution(ResolutionError):
    """Today is outside the resolution's validity window."""


class NoActiveResolution(ResolutionError, ConfigurationError):
    """No active resolution configured for a document kind."""


_allocation_locks = KeyedLocks()


def _today() -> date:
    return local_today(current_app.config.get("FISCAL_TIMEZONE", "America/Bogota"))


# =============================================================================
# SETUP
# =============================================================================

def create_resolution(
    *,
    kind: str,
    resolution_number: str,
    prefix: str,
    range_from: int,
    range_to: int,
    valid_from: date,
    valid_to: date,
    technical_key: str | None = None,
    alert_threshold: int = 100,
    activate: bool = True,
) -> Resolution:
    """
    Register a numbering resolution.

    When activated, any other active resolution of the same kind is
    deactivated: selection per kind is unambiguous.
    """
    if kind not in DOCUMENT_KINDS:
        raise ResolutionError(f"Invalid kind: {kind}")
    if not resolution_number or not prefix:
        raise ResolutionError("resolution_number and prefix are required")
    if range_from < 1 or range_to < range_from:
        raise ResolutionError("Invalid numbering range")
    if valid_to < valid_from:
        raise ResolutionError("valid_to must not precede valid_from")
    if alert_threshold < 0:
        raise ResolutionError("alert_threshold must be >= 0")

    if activate:
        db.session.query(Resolution).filter_by(kind=kind, is_active=True).update(
            {"is_active": False}, synchronize_session=False
        )

    resolution = Resolution(
        kind=kind,
        resolution_number=resolution_number,
        prefix=prefix,
        range_from=range_from,
        range_to=range_to,
        last_allocated=range_from - 1,
        valid_from=valid_from,
        valid_to=valid_to,
        technical_key=technical_key,
        alert_threshold=alert_threshold,
        is_active=activate,
    )
    db.session.add(resolution)
    db.session.commit()
    return resolution


def deactivate_resolution(resolution_id: int) -> Resolution:
    resolution = db.session.get(Resolution, resolution_id)
    if not resolution:
        raise ResolutionError("Resolution not found")
    resolution.is_active = False
    db.session.commit()
    return resolution


def list_resolutions(kind: str | None = None, include_inactive: bool = True) -> list[Resolution]:
    query = db.session.query(Resolution)
    if kind:
        query = query.filter_by(kind=kind)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(Resolution.kind, Resolution.id.desc()).all()


def select_resolution(kind: str) -> Resolution:
    """Active resolution for a document kind (most recent first)."""
    resolution = (
        db.session.query(Resolution)
        .filter_by(kind=kind, is_active=True)
        .order_by(Resolution.valid_from.desc(), Resolution.id.desc())
        .first()
    )
    if not resolution:
        raise NoActiveResolution(f"No active {kind} resolution configured")
    return resolution


# =============================================================================
# ALLOCATION
# =============================================================================

def allocate(resolution_id: int, *, document=None, today: date | None = None) -> tuple[str, int]:
    """
    Allocate the next number of a resolution and commit it.

    When a document is given, its resolution/prefix/number are set in the
    same transaction as the counter bump, so a crash can never leave a
    consumed number unattached.

    Raises:
        ExpiredResolution: today outside [valid_from, valid_to]
        ExhaustedRange: last_allocated == range_to
        ResolutionError: unknown or inactive resolution, or document already numbered
    """
    if document is not None and document.number is not None:
        raise ResolutionError(f"Document already numbered {document.full_number}")

    with _allocation_locks.get(resolution_id):
        resolution = db.session.get(Resolution, resolution_id)
        if not resolution:
            raise ResolutionError("Resolution not found")
        if not resolution.is_active:
            raise ResolutionError(f"Resolution {resolution.resolution_number} is inactive")

        today = today or _today()
        if today < resolution.valid_from or today > resolution.valid_to:
            raise ExpiredResolution(
                f"Resolution {resolution.resolution_number} valid "
                f"{resolution.valid_from.isoformat()}..{resolution.valid_to.isoformat()}, today is {today.isoformat()}"
            )

        stmt = (
            update(Resolution)
            .where(
                Resolution.id == resolution_id,
                Resolution.last_allocated < Resolution.range_to,
            )
            .values(last_allocated=Resolution.last_allocated + 1)
            .execution_options(synchronize_session=False)
        )
        if not guarded_update(stmt):
            db.session.rollback()
            raise ExhaustedRange(
                f"Resolution {resolution.resolution_number} exhausted at {resolution.prefix}{resolution.range_to}"
            )

        number = db.session.query(Resolution.last_allocated).filter_by(id=resolution_id).scalar()
        prefix = resolution.prefix

        if document is not None:
            document.resolution_id = resolution_id
            document.prefix = prefix
            document.number = number

        db.session.commit()

    check_near_limit(resolution_id)
    return prefix, number


# =============================================================================
# STATUS
# =============================================================================

def resolution_status(resolution_id: int) -> dict:
    resolution = db.session.get(Resolution, resolution_id)
    if not resolution:
        raise ResolutionError("Resolution not found")
    db.session.refresh(resolution)

    remaining = resolution.remaining
    today = _today()
    return {
        "resolution": resolution.to_dict(),
        "remaining": remaining,
        "alert_threshold": resolution.alert_threshold,
        "is_near_limit": remaining <= resolution.alert_threshold,
        "is_exhausted": remaining == 0,
        "is_expired": not (resolution.valid_from <= today <= resolution.valid_to),
        "next_number": resolution.last_allocated + 1 if remaining else None,
    }


def check_near_limit(resolution_id: int):
    """Raise the near-limit alert once per resolution while unacknowledged."""
    status = resolution_status(resolution_id)
    if not status["is_near_limit"]:
        return None
    resolution = status["resolution"]
    return alert_service.raise_alert(
        alert_service.ALERT_RESOLUTION_NEAR_LIMIT,
        f"Resolution {resolution['resolution_number']} ({resolution['prefix']}) has "
        f"{status['remaining']} numbers left",
        document_type="resolution",
        document_id=resolution_id,
    )


# =============================================================================
# GATEWAY SYNC
# =============================================================================

def gateway_payload(resolution: Resolution) -> dict:
    """Body for the gateway's resolution configuration endpoint."""
    return {
        "type_document_id": TYPE_DOCUMENT_IDS[resolution.kind],
        "prefix": resolution.prefix,
        "resolution": resolution.resolution_number,
        "resolution_date": resolution.valid_from.isoformat(),
        "technical_key": resolution.technical_key,
        "from": resolution.range_from,
        "to": resolution.range_to,
        "generated_to_date": max(resolution.last_allocated, 0),
        "date_from": resolution.valid_from.isoformat(),
        "date_to": resolution.valid_to.isoformat(),
    }


def _parse_date(value, field: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ResolutionError(f"DIAN numbering range has an invalid {field}: {value!r}") from None


def migrate_to_production(gateway, software_id: str, *, alert_threshold: int = 100) -> Resolution:
    """
    Move the company from the habilitación environment to production.

    Switches the gateway environment, fetches the numbering range DIAN
    authorized for the software, registers it as the active invoice
    resolution and pushes it to the gateway. Test-set numbering stays in
    the database, deactivated.

    Gateway failures propagate unchanged; a DIAN answer without ranges
    raises ResolutionError after the environment has already switched.
    """
    gateway.change_environment("production")
    ranges = gateway.numbering_ranges(software_id)
    if not ranges:
        raise ResolutionError(f"DIAN returned no numbering ranges for software {software_id}")

    authorized = ranges[0]
    valid_to = _parse_date(authorized["valid_to"], "valid_to")
    valid_from = _parse_date(authorized["valid_from"] or authorized["resolution_date"], "valid_from")
    resolution = create_resolution(
        kind="invoice",
        resolution_number=authorized["resolution_number"],
        prefix=authorized["prefix"],
        range_from=authorized["range_from"],
        range_to=authorized["range_to"],
        valid_from=valid_from,
        valid_to=valid_to,
        technical_key=authorized["technical_key"],
        alert_threshold=alert_threshold,
    )
    gateway.configure_resolution(gateway_payload(resolution))
    logger.info(
        "Migrated to production with resolution %s (%s%s-%s)",
        resolution.resolution_number, resolution.prefix, resolution.range_from, resolution.range_to,
    )
    return resolution
