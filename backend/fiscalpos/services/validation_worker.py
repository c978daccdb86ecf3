# Overview: Background loop that numbers, submits and polls fiscal documents against the gateway.

"""
Validation Worker

WHY: The gateway is slow and fails often. Sales must never wait on it, so
submission happens out of band: a single consumer drains pending documents,
retries transient failures within a budget, polls asynchronous validations
and raises operator alerts for anything a retry cannot fix.

TICK:
1. Recover documents left in validating longer than any call can last -> error
2. Requeue retryable errors whose automatic-retry budget is not spent
3. Pending documents: allocate number (committed), build payload, persist
   validating, then submit through the thread pool
4. Apply each submission outcome (own transaction per document)
5. Poll sent documents with a zip key not checked within the poll interval

DESIGN:
- All database work runs on the worker thread; only gateway HTTP calls run
  in the pool (bounded by FISCAL_WORKER_POOL_SIZE)
- An exception while handling one document is logged and never escapes the tick
- Status-change signals are sent after the owning commit
- A validating document younger than FISCAL_GATEWAY_TIMEOUT +
  FISCAL_INFLIGHT_GRACE may still have a call open (here or in another
  process) and is left alone; it is never resubmitted while that call can
  still land
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from flask import current_app, has_app_context
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models.fiscal import (
    STATUS_PENDING,
    STATUS_ERROR,
    ERROR_TRANSIENT,
    ERROR_UNEXPECTED,
    ERROR_CREDENTIALS,
    ERROR_CONFIGURATION,
    ERROR_NUMBERING,
)
from ..repositories import invoices as invoices_repo
from ..signals import invoice_status_changed
from fiscalpos.time_utils import utcnow, local_now
from . import alert_service
from . import invoice_state
from . import resolution_service
from .gateway_client import (
    FiscalGateway,
    ConfigurationError,
    GatewayAuthError,
    GatewayEndpointError,
    GatewayRejected,
    GatewayTransient,
    UnexpectedGatewayResponse,
    OUTCOME_ACCEPTED,
    OUTCOME_REJECTED,
    OUTCOME_QUEUED,
)
from .invoice_payload import PayloadError, build_payload


logger = logging.getLogger(__name__)

RAW_RESPONSE_LIMIT = 2000

INTERRUPTED_MESSAGE = "Submission interrupted before the gateway answered; will retry"


def _clip(text: str | None) -> str | None:
    if text is None:
        return None
    return text if len(text) <= RAW_RESPONSE_LIMIT else text[:RAW_RESPONSE_LIMIT] + "..."


class ValidationWorker:
    """
    Timer-driven consumer of the fiscal document queue.

    Args:
        app: Flask app (config and app context for the background thread)
        gateway: FiscalGateway or any object with submit(kind, payload) and
            query_status(zip_key); built from config on first use when omitted
        interval: Seconds between ticks (FISCAL_WORKER_INTERVAL)
        max_retries: Automatic-retry budget for transient failures (FISCAL_MAX_RETRIES)
        pool_size: Concurrent gateway calls (FISCAL_WORKER_POOL_SIZE)
        poll_min_interval: Seconds between status polls of one document (FISCAL_POLL_MIN_INTERVAL)
        recover_after: Age in seconds after which a validating document counts as
            interrupted (FISCAL_GATEWAY_TIMEOUT + FISCAL_INFLIGHT_GRACE)
        max_polls: Polls without a verdict before a stalled-validation alert (FISCAL_MAX_POLLS)
    """

    def __init__(
        self,
        app,
        gateway=None,
        *,
        interval: float | None = None,
        max_retries: int | None = None,
        pool_size: int | None = None,
        poll_min_interval: float | None = None,
        recover_after: float | None = None,
        max_polls: int | None = None,
    ):
        config = app.config
        self.app = app
        self._gateway = gateway
        self.interval = interval if interval is not None else config.get("FISCAL_WORKER_INTERVAL", 30)
        self.max_retries = max_retries if max_retries is not None else config.get("FISCAL_MAX_RETRIES", 3)
        self.pool_size = pool_size if pool_size is not None else config.get("FISCAL_WORKER_POOL_SIZE", 4)
        self.poll_min_interval = (
            poll_min_interval if poll_min_interval is not None else config.get("FISCAL_POLL_MIN_INTERVAL", 20)
        )
        if recover_after is None:
            recover_after = config.get("FISCAL_GATEWAY_TIMEOUT", 30) + config.get("FISCAL_INFLIGHT_GRACE", 60)
        self.recover_after = recover_after
        self.max_polls = max_polls if max_polls is not None else config.get("FISCAL_MAX_POLLS", 30)
        self.timezone = config.get("FISCAL_TIMEZONE", "America/Bogota")

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._tick_lock = threading.Lock()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="fiscal-validation-worker", daemon=True)
        self._thread.start()
        logger.info("Validation worker started (interval=%ss, pool=%s)", self.interval, self.pool_size)

    def stop(self, timeout: float | None = None) -> None:
        """Stop after the current tick; in-flight gateway calls are allowed to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        logger.info("Validation worker stopped")

    def _run(self) -> None:
        with self.app.app_context():
            while not self._stop_event.is_set():
                try:
                    self.run_once()
                except Exception:
                    logger.exception("Validation worker tick failed")
                    db.session.rollback()
                finally:
                    db.session.remove()
                self._stop_event.wait(self.interval)

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, int(self.pool_size)),
                thread_name_prefix="fiscal-gateway",
            )
        return self._executor

    def _get_gateway(self):
        if self._gateway is None:
            self._gateway = FiscalGateway.from_config(self.app.config)
        return self._gateway

    # =========================================================================
    # TICK
    # =========================================================================

    def run_once(self) -> dict:
        """Run one tick. Returns counters for logging and tests."""
        if has_app_context() and current_app._get_current_object() is self.app:
            return self._tick()
        with self.app.app_context():
            return self._tick()

    def _tick(self) -> dict:
        with self._tick_lock:
            stats = {
                "recovered": 0,
                "requeued": 0,
                "submitted": 0,
                "accepted": 0,
                "rejected": 0,
                "sent": 0,
                "errors": 0,
                "polled": 0,
            }
            self._recover_interrupted(stats)
            self._requeue_retryable(stats)

            try:
                gateway = self._get_gateway()
            except ConfigurationError as exc:
                logger.error("Fiscal gateway not configured: %s", exc)
                self._alert_global(alert_service.ALERT_CONFIGURATION, str(exc))
                return stats

            self._submit_pending(gateway, stats)
            self._poll_sent(gateway, stats)

            if any(stats.values()):
                logger.info("Validation tick: %s", stats)
            return stats

    # -------------------------------------------------------------------------
    # Recovery / retry
    # -------------------------------------------------------------------------

    def _recover_interrupted(self, stats: dict) -> None:
        sent_before = utcnow() - timedelta(seconds=self.recover_after)
        for document in invoices_repo.stale_in_flight(sent_before):
            def _apply(doc=document):
                previous = invoice_state.recover_interrupted(doc, INTERRUPTED_MESSAGE)
                return [(doc, previous)], []
            if self._in_transaction(document, _apply):
                stats["recovered"] += 1

    def _requeue_retryable(self, stats: dict) -> None:
        for document in invoices_repo.documents_in_status(STATUS_ERROR):
            if not invoice_state.is_auto_retryable(document, self.max_retries):
                continue

            def _apply(doc=document):
                previous = invoice_state.requeue(doc)
                return [(doc, previous)], []
            if self._in_transaction(document, _apply):
                stats["requeued"] += 1

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def _prepare(self, document) -> dict | None:
        """
        Number the document, build its payload and persist validating.

        Returns the payload, or None when the document failed before submission.
        """
        kind = document.document_kind
        try:
            if document.number is None:
                resolution = resolution_service.select_resolution(kind)
                resolution_service.allocate(resolution.id, document=document)
        except (resolution_service.ResolutionError, ConfigurationError) as exc:
            db.session.rollback()
            self._fail(document, ERROR_NUMBERING, str(exc), alert_type=alert_service.ALERT_NUMBERING)
            return None

        try:
            payload = build_payload(document, local_now(self.timezone))
        except PayloadError as exc:
            db.session.rollback()
            self._fail(document, ERROR_CONFIGURATION, str(exc), alert_type=alert_service.ALERT_CONFIGURATION)
            return None

        def _apply():
            document.request_payload = json.dumps(payload, ensure_ascii=False)
            previous = invoice_state.mark_validating(document, utcnow())
            return [(document, previous)], []
        if not self._in_transaction(document, _apply):
            return None
        return payload

    def _submit_pending(self, gateway, stats: dict) -> None:
        jobs = []
        for document in invoices_repo.documents_in_status(STATUS_PENDING):
            try:
                payload = self._prepare(document)
            except Exception:
                logger.exception("Failed to prepare %s %s", document.document_kind, document.id)
                db.session.rollback()
                continue
            if payload is None:
                stats["errors"] += 1
                continue
            jobs.append((document.document_kind, document.id, payload))

        if not jobs:
            return

        pool = self._pool()
        futures = [
            (kind, document_id, pool.submit(gateway.submit, kind, payload))
            for kind, document_id, payload in jobs
        ]
        stats["submitted"] += len(futures)

        # Outcomes are applied here, on the worker thread, in submission order
        for kind, document_id, future in futures:
            try:
                result = future.result()
                error = None
            except Exception as exc:
                result = None
                error = exc

            document = invoices_repo.get_document(kind, document_id)
            if document is None:
                logger.error("%s %s vanished while in flight", kind, document_id)
                continue
            try:
                outcome = self._apply_submission(document, result, error)
            except Exception:
                logger.exception("Failed to apply gateway outcome to %s %s", kind, document_id)
                db.session.rollback()
                continue
            if outcome:
                stats[outcome] += 1

    def _apply_submission(self, document, result, error) -> str | None:
        now = utcnow()

        if error is not None:
            return self._apply_submission_error(document, error)

        def _apply():
            document.gateway_response = result.raw_response
            document.cufe = result.cufe or document.cufe
            document.uuid = result.uuid or document.uuid
            document.qr_code = result.qr_code or document.qr_code
            document.last_error = None
            if result.outcome == OUTCOME_ACCEPTED:
                previous = invoice_state.mark_accepted(document, result.message, now)
            elif result.outcome == OUTCOME_REJECTED:
                previous = invoice_state.mark_rejected(document, result.message, now)
            elif result.outcome == OUTCOME_QUEUED:
                previous = invoice_state.mark_sent(document, result.zip_key, now, result.message)
            else:
                raise UnexpectedGatewayResponse(
                    f"Unexpected submission outcome {result.outcome}", raw_response=result.raw_response
                )
            return [(document, previous)], []

        if not self._in_transaction(document, _apply):
            return None
        return {
            OUTCOME_ACCEPTED: "accepted",
            OUTCOME_REJECTED: "rejected",
            OUTCOME_QUEUED: "sent",
        }[result.outcome]

    def _apply_submission_error(self, document, error: Exception) -> str | None:
        label = f"{document.document_kind} {document.full_number or document.id}"

        if isinstance(error, GatewayRejected):
            logger.warning("%s rejected by gateway: %s", label, error.message)

            def _apply():
                document.gateway_response = error.raw_response
                previous = invoice_state.mark_rejected(document, error.message, utcnow())
                return [(document, previous)], []
            return "rejected" if self._in_transaction(document, _apply) else None

        if isinstance(error, GatewayAuthError):
            kind, alert_type = ERROR_CREDENTIALS, alert_service.ALERT_CREDENTIALS
        elif isinstance(error, GatewayEndpointError):
            kind, alert_type = ERROR_CONFIGURATION, alert_service.ALERT_CONFIGURATION
        elif isinstance(error, ConfigurationError):
            kind, alert_type = ERROR_CONFIGURATION, alert_service.ALERT_CONFIGURATION
        elif isinstance(error, GatewayTransient):
            kind, alert_type = ERROR_TRANSIENT, None
        else:
            kind, alert_type = ERROR_UNEXPECTED, None
            if not isinstance(error, UnexpectedGatewayResponse):
                logger.error("Unexpected failure submitting %s", label, exc_info=error)

        message = str(error)
        raw = getattr(error, "raw_response", None)
        if kind == ERROR_UNEXPECTED and raw:
            message = f"{message}\n{_clip(raw)}"

        logger.warning("%s submission failed (%s): %s", label, kind, str(error))
        if raw:
            document.gateway_response = raw
        return "errors" if self._fail(document, kind, message, alert_type=alert_type) else None

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def _poll_sent(self, gateway, stats: dict) -> None:
        checked_before = utcnow() - timedelta(seconds=self.poll_min_interval)
        documents = invoices_repo.documents_to_poll(checked_before)
        if not documents:
            return

        pool = self._pool()
        futures = [
            (doc.document_kind, doc.id, pool.submit(gateway.query_status, doc.zip_key))
            for doc in documents
        ]
        stats["polled"] += len(futures)

        for kind, document_id, future in futures:
            try:
                result = future.result()
                error = None
            except Exception as exc:
                result = None
                error = exc

            document = invoices_repo.get_document(kind, document_id)
            if document is None:
                continue
            try:
                outcome = self._apply_poll(document, result, error)
            except Exception:
                logger.exception("Failed to apply status poll to %s %s", kind, document_id)
                db.session.rollback()
                continue
            if outcome:
                stats[outcome] += 1

    def _apply_poll(self, document, result, error) -> str | None:
        now = utcnow()

        if error is not None:
            # Polling failures never change status: the document stays sent
            alert_type = None
            if isinstance(error, GatewayAuthError):
                alert_type = alert_service.ALERT_CREDENTIALS
            elif isinstance(error, (GatewayEndpointError, ConfigurationError)):
                alert_type = alert_service.ALERT_CONFIGURATION
            logger.warning(
                "Status poll for %s %s failed: %s", document.document_kind, document.id, error
            )
            message = str(error)
            raw = getattr(error, "raw_response", None)
            if raw:
                message = f"{message}\n{_clip(raw)}"

            def _apply():
                document.last_error = message
                document.validation_checked_at = now
                document.poll_count = (document.poll_count or 0) + 1
                alerts = []
                if alert_type:
                    alerts.append(alert_service.raise_alert(
                        alert_type, str(error),
                        document_type=document.document_kind, document_id=document.id, commit=False,
                    ))
                alerts.append(self._stalled_alert(document))
                return [], [alert for alert in alerts if alert]
            self._in_transaction(document, _apply)
            return None

        def _apply():
            document.validation_checked_at = now
            document.poll_count = (document.poll_count or 0) + 1
            if result.outcome == OUTCOME_ACCEPTED:
                document.gateway_response = result.raw_response
                document.cufe = document.cufe or result.cufe
                document.last_error = None
                return [(document, invoice_state.mark_accepted(document, result.message, now))], []
            if result.outcome == OUTCOME_REJECTED:
                document.gateway_response = result.raw_response
                document.last_error = None
                return [(document, invoice_state.mark_rejected(document, result.message, now))], []
            alert = self._stalled_alert(document)
            return [], [alert] if alert else []

        if not self._in_transaction(document, _apply):
            return None
        if result.outcome == OUTCOME_ACCEPTED:
            return "accepted"
        if result.outcome == OUTCOME_REJECTED:
            return "rejected"
        return None

    def _stalled_alert(self, document):
        """Alert once a sent document has been polled max_polls times without a verdict."""
        if document.poll_count < self.max_polls:
            return None
        return alert_service.raise_alert(
            alert_service.ALERT_VALIDATION_STALLED,
            f"{document.document_kind} {document.full_number} has no validation verdict after "
            f"{document.poll_count} status polls (zip {document.zip_key})",
            document_type=document.document_kind, document_id=document.id, commit=False,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _fail(self, document, error_kind: str, message: str, *, alert_type: str | None) -> bool:
        """Move document to error, charge the retry budget and alert when due."""
        def _apply():
            previous, alert_due = invoice_state.mark_failed(
                document, error_kind, message, max_retries=self.max_retries
            )
            alerts = []
            if alert_due:
                kind = alert_type or alert_service.ALERT_RETRIES_EXHAUSTED
                text = message
                if alert_type is None:
                    text = (
                        f"Automatic retries exhausted after {document.transient_failures} failures; "
                        f"manual resend required. Last error: {message}"
                    )
                alert = alert_service.raise_alert(
                    kind, text,
                    document_type=document.document_kind, document_id=document.id, commit=False,
                )
                if alert:
                    alerts.append(alert)
            return [(document, previous)], alerts
        return self._in_transaction(document, _apply)

    def _alert_global(self, alert_type: str, message: str) -> None:
        try:
            alert_service.raise_alert(alert_type, message)
        except Exception:
            logger.exception("Failed to record %s alert", alert_type)
            db.session.rollback()

    def _in_transaction(self, document, apply) -> bool:
        """
        Run apply(), commit, then announce. apply returns (changes, alerts):
        changes are (document, previous_status) pairs.

        A concurrent update (StaleDataError) or an illegal transition rolls
        back; the document is picked up again next tick.
        """
        try:
            changes, alerts = apply()
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            logger.warning(
                "%s %s changed concurrently; retrying next tick", document.document_kind, document.id
            )
            return False
        except invoice_state.InvoiceStateError as exc:
            db.session.rollback()
            logger.warning("%s", exc)
            return False

        for alert in alerts:
            alert_service.announce_alert(alert)
        for changed, previous in changes:
            notify_status_change(changed, previous)
        return True


def notify_status_change(document, previous: str) -> None:
    """Send invoice-status-changed; receiver failures are logged, not propagated."""
    if previous == document.status:
        return
    try:
        invoice_status_changed.send(
            current_app._get_current_object(),
            document=document,
            previous=previous,
            status=document.status,
            badge=invoice_state.badge_for(document.status),
        )
    except Exception:
        logger.exception("invoice-status-changed receiver failed for %s %s", document.document_kind, document.id)


def get_worker(app=None) -> ValidationWorker:
    """Worker attached to the app, created on first use."""
    app = app or current_app._get_current_object()
    worker = app.extensions.get("fiscal_worker")
    if worker is None:
        worker = ValidationWorker(app)
        app.extensions["fiscal_worker"] = worker
    return worker
