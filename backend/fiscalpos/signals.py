# Overview: In-process notifications for fiscal document status changes and operator alerts.

from blinker import Namespace

fiscal_signals = Namespace()

# sender: Flask app; kwargs: document, previous, status, badge
invoice_status_changed = fiscal_signals.signal("invoice-status-changed")

# sender: Flask app; kwargs: alert
fiscal_alert_raised = fiscal_signals.signal("fiscal-alert-raised")
