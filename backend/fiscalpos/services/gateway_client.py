# Overview: HTTP adapter for the UBL 2.1 fiscal gateway (DIAN); classifies every response into a typed outcome.

"""
Fiscal Gateway Client

WHY: The gateway is slow and unreliable. Callers should never inspect raw
HTTP: every call ends in a GatewayResult or one of the exceptions below, and
the worker maps those onto document states.

DESIGN:
- One httpx.Client per gateway instance (thread-safe, pooled connections)
- Bearer token auth on every fiscal call
- No retries here; retry policy belongs to the validation worker
- testSetId suffix only in the test environment with the flag on

STATUS CLASSIFICATION:
- 401/403 -> GatewayAuthError (credentials)
- 404 -> GatewayEndpointError (configuration)
- 400/422 -> GatewayRejected
- 429/5xx, timeouts, connection errors -> GatewayTransient
- anything else -> UnexpectedGatewayResponse
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx


logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base class for gateway call failures."""

    def __init__(self, message: str, *, status_code: int | None = None, raw_response: str | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.raw_response = raw_response


class ConfigurationError(Exception):
    """Raised when fiscal settings are missing or rejected by the gateway."""
    pass


class GatewayAuthError(ConfigurationError, GatewayError):
    """Gateway refused the API token (401/403)."""


class GatewayEndpointError(ConfigurationError, GatewayError):
    """Gateway endpoint or company setup not found (404)."""


class GatewayRejected(GatewayError):
    """Document refused by the gateway or by DIAN. Never retried automatically."""


class GatewayTransient(GatewayError):
    """Timeout, connection failure, throttling or server error."""


class UnexpectedGatewayResponse(GatewayError):
    """Response could not be understood."""


# =============================================================================
# RESULTS
# =============================================================================

OUTCOME_ACCEPTED = "accepted"
OUTCOME_REJECTED = "rejected"
OUTCOME_QUEUED = "queued"  # async validation, poll with zip_key
OUTCOME_PENDING = "pending"  # poll answered, no verdict yet


@dataclass
class GatewayResult:
    outcome: str
    message: str = ""
    zip_key: str | None = None
    cufe: str | None = None
    uuid: str | None = None
    qr_code: str | None = None
    status_code: str | None = None
    errors: list[str] = field(default_factory=list)
    raw_response: str | None = None

    @property
    def is_final(self) -> bool:
        return self.outcome in (OUTCOME_ACCEPTED, OUTCOME_REJECTED)


SUBMIT_ENDPOINTS = {
    "invoice": "invoice",
    "credit_note": "credit-note",
    "debit_note": "debit-note",
}

# type_environment_id values of the gateway configuration
ENVIRONMENT_IDS = {"production": 1, "test": 2}

# Body the status endpoint expects; only the zip key in the path matters
STATUS_QUERY_BODY = {
    "sendmail": False,
    "sendmailtome": False,
    "is_payroll": False,
    "is_eqdoc": True,
}


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _error_strings(value: Any) -> list[str]:
    """ErrorMessage arrives as {"string": [..]}, {"string": ".."} or a bare string."""
    if value is None:
        return []
    if isinstance(value, dict):
        value = value.get("string")
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, list):
        return [str(v) for v in value if v]
    return []


def _verdict_message(verdict: dict, accepted: bool) -> str:
    status_code = verdict.get("StatusCode") or ""
    description = verdict.get("StatusDescription") or ""
    errors = _error_strings(verdict.get("ErrorMessage"))
    if accepted:
        return description or "Validated by DIAN"
    message = f"{status_code} - {description}".strip(" -")
    if errors:
        message = (message + "\n" if message else "") + "\n".join(errors)
    return message or "Rejected by DIAN"


class FiscalGateway:
    """
    Client for the apidian-style UBL 2.1 JSON API.

    Args:
        base_url: Gateway root (without /api/ubl2.1)
        api_token: Bearer token issued when the company was configured
        environment: "test" or "production"
        test_set_id: DIAN habilitación test set; appended to submit paths in test mode
        use_test_set_id: Toggle for the suffix (some test setups validate synchronously)
        timeout: Per-call bound in seconds
        transport: Optional httpx transport (tests inject httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        *,
        environment: str = "test",
        test_set_id: str | None = None,
        use_test_set_id: bool = True,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        if not base_url:
            raise ConfigurationError("FISCAL_API_URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token or ""
        self.environment = environment
        self.test_set_id = test_set_id or ""
        self.use_test_set_id = use_test_set_id
        self.timeout = timeout

        client_kwargs = {"timeout": timeout, "base_url": self.base_url}
        if transport is not None:
            client_kwargs["transport"] = transport
        self.client = httpx.Client(**client_kwargs)

    @classmethod
    def from_config(cls, config, transport: httpx.BaseTransport | None = None) -> "FiscalGateway":
        return cls(
            config.get("FISCAL_API_URL", ""),
            config.get("FISCAL_API_TOKEN", ""),
            environment=config.get("FISCAL_ENVIRONMENT", "test"),
            test_set_id=config.get("FISCAL_TEST_SET_ID"),
            use_test_set_id=config.get("FISCAL_USE_TEST_SET_ID", True),
            timeout=config.get("FISCAL_GATEWAY_TIMEOUT", 30.0),
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    # =========================================================================
    # HTTP
    # =========================================================================

    def _headers(self, *, auth: bool = True) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if auth:
            if not self.api_token:
                raise ConfigurationError("FISCAL_API_TOKEN is not configured")
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _request(self, method: str, path: str, payload: dict | None, *, auth: bool = True) -> dict:
        headers = self._headers(auth=auth)
        logger.debug("Gateway %s %s", method, path)
        try:
            response = self.client.request(method, path, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Gateway %s %s timed out after %ss", method, path, self.timeout)
            raise GatewayTransient(f"Gateway timeout: {exc}") from exc
        except httpx.TransportError as exc:
            logger.warning("Gateway %s %s connection error: %s", method, path, exc)
            raise GatewayTransient(f"Gateway connection error: {exc}") from exc

        status = response.status_code
        raw = response.text
        logger.info("Gateway %s %s -> %s", method, path, status)

        if status in (401, 403):
            raise GatewayAuthError(
                f"Gateway refused credentials (HTTP {status})", status_code=status, raw_response=raw
            )
        if status == 404:
            raise GatewayEndpointError(
                f"Gateway endpoint not found: {path}", status_code=status, raw_response=raw
            )
        if status in (400, 422):
            raise GatewayRejected(_rejection_message(response), status_code=status, raw_response=raw)
        if status == 429 or status >= 500:
            raise GatewayTransient(f"Gateway unavailable (HTTP {status})", status_code=status, raw_response=raw)
        if status not in (200, 201):
            raise UnexpectedGatewayResponse(
                f"Unexpected gateway status {status}", status_code=status, raw_response=raw
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise UnexpectedGatewayResponse(
                "Gateway returned a non-JSON body", status_code=status, raw_response=raw
            ) from exc
        if not isinstance(data, dict):
            raise UnexpectedGatewayResponse(
                "Gateway returned a non-object JSON body", status_code=status, raw_response=raw
            )
        return data

    def _submit_path(self, kind: str) -> str:
        endpoint = SUBMIT_ENDPOINTS.get(kind)
        if endpoint is None:
            raise ValueError(f"Unknown document kind: {kind}")
        path = f"/api/ubl2.1/{endpoint}"
        if self.environment == "test" and self.use_test_set_id and self.test_set_id:
            path = f"{path}/{self.test_set_id}"
        return path

    # =========================================================================
    # FISCAL DOCUMENTS
    # =========================================================================

    def submit(self, kind: str, payload: dict) -> GatewayResult:
        """
        Submit an invoice, credit note or debit note.

        Returns an accepted/rejected result for synchronous validation or a
        queued result carrying the zip key for asynchronous validation.
        """
        data = self._request("POST", self._submit_path(kind), payload)
        raw = json.dumps(data, ensure_ascii=False)
        body = _dig(data, "ResponseDian", "Envelope", "Body")

        result = GatewayResult(
            outcome=OUTCOME_QUEUED,
            cufe=data.get("cufe") or None,
            uuid=data.get("uuid") or None,
            qr_code=data.get("QRStr") or data.get("qr_code") or None,
            raw_response=raw,
        )

        zip_key = _dig(body, "SendTestSetAsyncResponse", "SendTestSetAsyncResult", "ZipKey")
        if zip_key:
            result.zip_key = zip_key
            result.message = "Queued for DIAN validation"
            return result

        sync = _dig(body, "SendBillSyncResponse", "SendBillSyncResult")
        is_valid = sync.get("IsValid") if isinstance(sync, dict) else None
        if is_valid in ("true", "false"):
            accepted = is_valid == "true"
            result.outcome = OUTCOME_ACCEPTED if accepted else OUTCOME_REJECTED
            result.status_code = sync.get("StatusCode")
            result.errors = _error_strings(sync.get("ErrorMessage"))
            result.message = _verdict_message(sync, accepted)
            return result

        raise UnexpectedGatewayResponse(
            "Gateway response carries neither a zip key nor a validation verdict",
            status_code=200,
            raw_response=raw,
        )

    def query_status(self, zip_key: str) -> GatewayResult:
        """
        Poll DIAN validation for an asynchronously submitted document.

        Final only when DianResponse.IsValid is non-empty.
        """
        if not zip_key:
            raise ValueError("zip_key is required")
        data = self._request("POST", f"/api/ubl2.1/status/zip/{zip_key}", STATUS_QUERY_BODY)
        raw = json.dumps(data, ensure_ascii=False)

        if "ResponseDian" not in data:
            raise UnexpectedGatewayResponse(
                "Status response is missing ResponseDian", status_code=200, raw_response=raw
            )

        verdict = _dig(
            data, "ResponseDian", "Envelope", "Body",
            "GetStatusZipResponse", "GetStatusZipResult", "DianResponse",
        )
        if isinstance(verdict, list):
            verdict = verdict[0] if verdict else None
        is_valid = verdict.get("IsValid") if isinstance(verdict, dict) else None
        if not is_valid:
            return GatewayResult(outcome=OUTCOME_PENDING, zip_key=zip_key, raw_response=raw)

        accepted = is_valid == "true"
        return GatewayResult(
            outcome=OUTCOME_ACCEPTED if accepted else OUTCOME_REJECTED,
            message=_verdict_message(verdict, accepted),
            zip_key=zip_key,
            cufe=verdict.get("XmlDocumentKey") or None,
            status_code=verdict.get("StatusCode"),
            errors=_error_strings(verdict.get("ErrorMessage")),
            raw_response=raw,
        )

    # =========================================================================
    # COMPANY SETUP
    # =========================================================================

    def configure_company(self, nit: str, dv: str, company: dict) -> dict:
        """Register the issuing company. No token yet; the response carries one."""
        if not nit or dv in (None, ""):
            raise ConfigurationError("nit and dv are required")
        return self._request("POST", f"/api/ubl2.1/config/{nit}/{dv}", company, auth=False)

    def configure_software(self, software: dict) -> dict:
        return self._request("PUT", "/api/ubl2.1/config/software", software)

    def configure_resolution(self, resolution: dict) -> dict:
        return self._request("PUT", "/api/ubl2.1/config/resolution", resolution)

    def configure_certificate(self, certificate: str, password: str) -> dict:
        """Upload the base64 .p12 signing certificate used for production documents."""
        if not certificate or not password:
            raise ConfigurationError("certificate and password are required")
        return self._request(
            "PUT", "/api/ubl2.1/config/certificate", {"certificate": certificate, "password": password}
        )

    def change_environment(self, environment: str) -> dict:
        """Switch invoices, payroll and equivalent documents between test and production."""
        env_id = ENVIRONMENT_IDS.get(environment)
        if env_id is None:
            raise ConfigurationError(f"environment must be one of {', '.join(ENVIRONMENT_IDS)}")
        return self._request("PUT", "/api/ubl2.1/config/environment", {
            "type_environment_id": env_id,
            "payroll_type_environment_id": env_id,
            "eqdocs_type_environment_id": env_id,
        })

    def numbering_ranges(self, software_id: str) -> list[dict]:
        """
        Numbering ranges DIAN has authorized for the software.

        Returns one dict per range: resolution_number, prefix, range_from,
        range_to, technical_key, resolution_date, valid_from, valid_to
        (dates as YYYY-MM-DD strings, as DIAN sends them).
        """
        if not software_id:
            raise ConfigurationError("software_id is required")
        data = self._request("POST", "/api/ubl2.1/numbering-range", {"IDSoftware": software_id})
        raw = json.dumps(data, ensure_ascii=False)

        result = _dig(
            data, "ResponseDian", "Envelope", "Body", "GetNumberingRangeResponse", "GetNumberingRangeResult"
        )
        if not isinstance(result, dict):
            raise UnexpectedGatewayResponse(
                "Numbering range response is missing GetNumberingRangeResult", status_code=200, raw_response=raw
            )
        code = result.get("OperationCode")
        if code is not None and str(code) != "100":
            description = result.get("OperationDescription")
            raise GatewayRejected(
                f"DIAN numbering range query failed: {code}" + (f" - {description}" if description else ""),
                status_code=200,
                raw_response=raw,
            )

        entries = _dig(result, "ResponseList", "NumberRangeResponse")
        if isinstance(entries, dict):
            entries = [entries]
        if not entries:
            return []

        ranges = []
        for entry in entries:
            try:
                ranges.append({
                    "resolution_number": entry["ResolutionNumber"],
                    "prefix": entry.get("Prefix") or "",
                    "range_from": int(entry["FromNumber"]),
                    "range_to": int(entry["ToNumber"]),
                    "technical_key": entry.get("TechnicalKey") or None,
                    "resolution_date": entry.get("ResolutionDate") or None,
                    "valid_from": entry.get("ValidDateFrom") or None,
                    "valid_to": entry.get("ValidDateTo") or None,
                })
            except (KeyError, TypeError, ValueError) as exc:
                raise UnexpectedGatewayResponse(
                    f"Malformed numbering range entry: {exc}", status_code=200, raw_response=raw
                ) from exc
        return ranges

    def resend_email(self, company_nit: str, prefix: str, number: int) -> dict:
        """Ask the gateway to e-mail an issued document to its customer again."""
        if not company_nit:
            raise ConfigurationError("FISCAL_COMPANY_NIT is not configured")
        return self._request("POST", "/api/send-email-employee/NO", {
            "company_idnumber": company_nit,
            "prefix": prefix,
            "number": str(number),
        })


def _rejection_message(response: httpx.Response) -> str:
    """Verbatim gateway message plus field errors when the body is JSON."""
    try:
        data = response.json()
    except ValueError:
        return response.text or f"Rejected (HTTP {response.status_code})"
    if not isinstance(data, dict):
        return response.text
    message = data.get("message") or f"Rejected (HTTP {response.status_code})"
    errors = data.get("errors")
    if isinstance(errors, dict):
        details = []
        for name, problems in errors.items():
            if isinstance(problems, list):
                details.extend(f"{name}: {p}" for p in problems)
            else:
                details.append(f"{name}: {problems}")
        if details:
            message = message + "\n" + "\n".join(details)
    return message
