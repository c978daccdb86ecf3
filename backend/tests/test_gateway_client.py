"""
Gateway client tests against httpx.MockTransport: paths, headers, response
parsing and HTTP status classification.
"""

import json

import httpx
import pytest

from fiscalpos.services.gateway_client import (
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
    OUTCOME_PENDING,
)


def _gateway(handler, **kwargs):
    kwargs.setdefault("environment", "test")
    kwargs.setdefault("test_set_id", "set-42")
    return FiscalGateway("https://gw.local", "tok", transport=httpx.MockTransport(handler), **kwargs)


def _recorder(response):
    calls = []

    def handler(request):
        calls.append(request)
        return response(request) if callable(response) else response
    return handler, calls


SYNC_ACCEPTED = {
    "message": "Factura #SETP990000001 generada con éxito",
    "ResponseDian": {"Envelope": {"Body": {"SendBillSyncResponse": {"SendBillSyncResult": {
        "IsValid": "true",
        "StatusCode": "00",
        "StatusDescription": "Procesado Correctamente.",
        "ErrorMessage": {"string": []},
    }}}}},
    "cufe": "cufe-abc",
    "uuid": "uuid-abc",
    "QRStr": "NumFac: SETP990000001",
}

SYNC_REJECTED = {
    "ResponseDian": {"Envelope": {"Body": {"SendBillSyncResponse": {"SendBillSyncResult": {
        "IsValid": "false",
        "StatusCode": "99",
        "StatusDescription": "Validación contiene errores en campos mandatorios.",
        "ErrorMessage": {"string": ["Regla: FAD06, Rechazo: CUFE no calculado correctamente"]},
    }}}}},
}

ASYNC_QUEUED = {
    "ResponseDian": {"Envelope": {"Body": {"SendTestSetAsyncResponse": {"SendTestSetAsyncResult": {
        "ZipKey": "zip-9f1",
    }}}}},
    "cufe": "cufe-async",
}


def _status_body(is_valid, **verdict):
    verdict.update({"IsValid": is_valid})
    return {"ResponseDian": {"Envelope": {"Body": {"GetStatusZipResponse": {"GetStatusZipResult": {
        "DianResponse": verdict,
    }}}}}}


def test_submit_path_includes_test_set_in_test_environment():
    handler, calls = _recorder(httpx.Response(200, json=SYNC_ACCEPTED))
    _gateway(handler).submit("invoice", {"number": 1})

    request = calls[0]
    assert request.method == "POST"
    assert request.url.path == "/api/ubl2.1/invoice/set-42"
    assert request.headers["Authorization"] == "Bearer tok"
    assert json.loads(request.content) == {"number": 1}


def test_submit_path_without_test_set_in_production():
    handler, calls = _recorder(httpx.Response(200, json=SYNC_ACCEPTED))
    _gateway(handler, environment="production").submit("credit_note", {})
    assert calls[0].url.path == "/api/ubl2.1/credit-note"


def test_submit_path_honours_test_set_toggle():
    handler, calls = _recorder(httpx.Response(200, json=SYNC_ACCEPTED))
    _gateway(handler, use_test_set_id=False).submit("debit_note", {})
    assert calls[0].url.path == "/api/ubl2.1/debit-note"


def test_sync_acceptance_parsed():
    handler, _ = _recorder(httpx.Response(200, json=SYNC_ACCEPTED))
    result = _gateway(handler).submit("invoice", {})

    assert result.outcome == OUTCOME_ACCEPTED
    assert result.is_final
    assert result.cufe == "cufe-abc"
    assert result.uuid == "uuid-abc"
    assert result.qr_code == "NumFac: SETP990000001"
    assert result.message == "Procesado Correctamente."
    assert result.raw_response


def test_sync_rejection_carries_dian_errors():
    handler, _ = _recorder(httpx.Response(200, json=SYNC_REJECTED))
    result = _gateway(handler).submit("invoice", {})

    assert result.outcome == OUTCOME_REJECTED
    assert result.status_code == "99"
    assert "FAD06" in result.message
    assert result.errors == ["Regla: FAD06, Rechazo: CUFE no calculado correctamente"]


def test_async_submission_returns_zip_key():
    handler, _ = _recorder(httpx.Response(200, json=ASYNC_QUEUED))
    result = _gateway(handler).submit("invoice", {})

    assert result.outcome == OUTCOME_QUEUED
    assert not result.is_final
    assert result.zip_key == "zip-9f1"
    assert result.cufe == "cufe-async"


def test_submission_without_verdict_is_unexpected():
    handler, _ = _recorder(httpx.Response(200, json={"message": "ok"}))
    with pytest.raises(UnexpectedGatewayResponse):
        _gateway(handler).submit("invoice", {})


def test_non_json_body_is_unexpected():
    handler, _ = _recorder(httpx.Response(200, text="<html>proxy</html>"))
    with pytest.raises(UnexpectedGatewayResponse) as excinfo:
        _gateway(handler).submit("invoice", {})
    assert "proxy" in excinfo.value.raw_response


@pytest.mark.parametrize("status, error", [
    (401, GatewayAuthError),
    (403, GatewayAuthError),
    (404, GatewayEndpointError),
    (400, GatewayRejected),
    (422, GatewayRejected),
    (429, GatewayTransient),
    (500, GatewayTransient),
    (503, GatewayTransient),
    (302, UnexpectedGatewayResponse),
])
def test_status_classification(status, error):
    handler, _ = _recorder(httpx.Response(status, json={"message": "nope"}))
    with pytest.raises(error) as excinfo:
        _gateway(handler).submit("invoice", {})
    assert excinfo.value.status_code == status


def test_auth_and_endpoint_errors_are_configuration_errors():
    assert issubclass(GatewayAuthError, ConfigurationError)
    assert issubclass(GatewayEndpointError, ConfigurationError)


def test_rejection_message_includes_field_errors():
    body = {"message": "The given data was invalid.", "errors": {"customer.dv": ["The dv field is required."]}}
    handler, _ = _recorder(httpx.Response(422, json=body))
    with pytest.raises(GatewayRejected) as excinfo:
        _gateway(handler).submit("invoice", {})

    assert "The given data was invalid." in excinfo.value.message
    assert "customer.dv: The dv field is required." in excinfo.value.message


def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)
    with pytest.raises(GatewayTransient):
        _gateway(handler).submit("invoice", {})


def test_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)
    with pytest.raises(GatewayTransient):
        _gateway(handler).submit("invoice", {})


def test_missing_configuration():
    with pytest.raises(ConfigurationError):
        FiscalGateway("", "tok")

    gateway = FiscalGateway("https://gw.local", "", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    with pytest.raises(ConfigurationError):
        gateway.submit("invoice", {})


def test_query_status_accepted():
    body = _status_body("true", StatusDescription="Procesado Correctamente.", XmlDocumentKey="cufe-zip")
    handler, calls = _recorder(httpx.Response(200, json=body))
    result = _gateway(handler).query_status("zip-9f1")

    assert calls[0].url.path == "/api/ubl2.1/status/zip/zip-9f1"
    assert result.outcome == OUTCOME_ACCEPTED
    assert result.cufe == "cufe-zip"


def test_query_status_rejected():
    body = _status_body("false", StatusCode="99", StatusDescription="Documento con errores",
                        ErrorMessage={"string": "Regla: FAK24"})
    handler, _ = _recorder(httpx.Response(200, json=body))
    result = _gateway(handler).query_status("zip-9f1")

    assert result.outcome == OUTCOME_REJECTED
    assert "FAK24" in result.message


def test_query_status_without_verdict_is_pending():
    handler, _ = _recorder(httpx.Response(200, json=_status_body("")))
    result = _gateway(handler).query_status("zip-9f1")
    assert result.outcome == OUTCOME_PENDING


def test_query_status_missing_response_is_unexpected():
    handler, _ = _recorder(httpx.Response(200, json={"message": "ok"}))
    with pytest.raises(UnexpectedGatewayResponse):
        _gateway(handler).query_status("zip-9f1")


def test_configure_company_skips_authentication():
    handler, calls = _recorder(httpx.Response(200, json={"message": "Empresa creada", "token": "new-token"}))
    response = _gateway(handler).configure_company("900123456", "7", {"business_name": "Tienda"})

    assert calls[0].url.path == "/api/ubl2.1/config/900123456/7"
    assert "Authorization" not in calls[0].headers
    assert response["token"] == "new-token"


def test_from_config_reads_settings():
    config = {
        "FISCAL_API_URL": "https://gw.local/",
        "FISCAL_API_TOKEN": "tok",
        "FISCAL_ENVIRONMENT": "production",
        "FISCAL_TEST_SET_ID": "ignored",
        "FISCAL_GATEWAY_TIMEOUT": 5.0,
    }
    gateway = FiscalGateway.from_config(config)
    assert gateway.base_url == "https://gw.local"
    assert gateway.timeout == 5.0
    assert gateway._submit_path("invoice") == "/api/ubl2.1/invoice"
    gateway.close()


# =============================================================================
# COMPANY SETUP
# =============================================================================

def _numbering_body(entries, code="100", description="Solicitud procesada"):
    result = {"OperationCode": code, "OperationDescription": description}
    if entries is not None:
        result["ResponseList"] = {"NumberRangeResponse": entries}
    return {"ResponseDian": {"Envelope": {"Body": {"GetNumberingRangeResponse": {
        "GetNumberingRangeResult": result,
    }}}}}


PRODUCTION_RANGE = {
    "ResolutionNumber": "18764000001234",
    "ResolutionDate": "2026-09-01",
    "Prefix": "FE",
    "FromNumber": "1",
    "ToNumber": "5000",
    "ValidDateFrom": "2026-09-01",
    "ValidDateTo": "2028-09-01",
    "TechnicalKey": "fc8eac422eba16e22ffd8c6f94b3f40a6e38162c",
}


def test_configure_certificate():
    handler, calls = _recorder(httpx.Response(200, json={"message": "Certificado creado"}))
    _gateway(handler).configure_certificate("MIIK...", "secret")

    assert calls[0].method == "PUT"
    assert calls[0].url.path == "/api/ubl2.1/config/certificate"
    assert json.loads(calls[0].content) == {"certificate": "MIIK...", "password": "secret"}
    assert calls[0].headers["Authorization"] == "Bearer tok"


def test_configure_certificate_requires_both_fields():
    handler, calls = _recorder(httpx.Response(200, json={}))
    with pytest.raises(ConfigurationError):
        _gateway(handler).configure_certificate("MIIK...", "")
    assert calls == []


def test_change_environment_sets_every_document_family():
    handler, calls = _recorder(httpx.Response(200, json={"message": "Ambiente actualizado"}))
    _gateway(handler).change_environment("production")

    assert calls[0].method == "PUT"
    assert calls[0].url.path == "/api/ubl2.1/config/environment"
    assert json.loads(calls[0].content) == {
        "type_environment_id": 1,
        "payroll_type_environment_id": 1,
        "eqdocs_type_environment_id": 1,
    }


def test_change_environment_rejects_unknown_name():
    handler, _ = _recorder(httpx.Response(200, json={}))
    with pytest.raises(ConfigurationError):
        _gateway(handler).change_environment("staging")


def test_numbering_ranges_single_entry():
    handler, calls = _recorder(httpx.Response(200, json=_numbering_body(PRODUCTION_RANGE)))
    ranges = _gateway(handler).numbering_ranges("soft-1")

    assert calls[0].url.path == "/api/ubl2.1/numbering-range"
    assert json.loads(calls[0].content) == {"IDSoftware": "soft-1"}
    assert ranges == [{
        "resolution_number": "18764000001234",
        "prefix": "FE",
        "range_from": 1,
        "range_to": 5000,
        "technical_key": "fc8eac422eba16e22ffd8c6f94b3f40a6e38162c",
        "resolution_date": "2026-09-01",
        "valid_from": "2026-09-01",
        "valid_to": "2028-09-01",
    }]


def test_numbering_ranges_list_of_entries():
    second = dict(PRODUCTION_RANGE, Prefix="FEC", FromNumber="5001", ToNumber="9000")
    handler, _ = _recorder(httpx.Response(200, json=_numbering_body([PRODUCTION_RANGE, second])))
    ranges = _gateway(handler).numbering_ranges("soft-1")

    assert [r["prefix"] for r in ranges] == ["FE", "FEC"]
    assert ranges[1]["range_to"] == 9000


def test_numbering_ranges_empty():
    handler, _ = _recorder(httpx.Response(200, json=_numbering_body(None)))
    assert _gateway(handler).numbering_ranges("soft-1") == []


def test_numbering_ranges_failed_operation_is_rejected():
    body = _numbering_body(None, code="401", description="Software no autorizado")
    handler, _ = _recorder(httpx.Response(200, json=body))
    with pytest.raises(GatewayRejected) as exc:
        _gateway(handler).numbering_ranges("soft-1")
    assert "401 - Software no autorizado" in str(exc.value)


def test_numbering_ranges_malformed_entry_is_unexpected():
    handler, _ = _recorder(httpx.Response(200, json=_numbering_body({"Prefix": "FE"})))
    with pytest.raises(UnexpectedGatewayResponse):
        _gateway(handler).numbering_ranges("soft-1")


def test_numbering_ranges_missing_result_is_unexpected():
    handler, _ = _recorder(httpx.Response(200, json={"message": "ok"}))
    with pytest.raises(UnexpectedGatewayResponse):
        _gateway(handler).numbering_ranges("soft-1")


def test_resend_email():
    handler, calls = _recorder(httpx.Response(200, json={"message": "Correo enviado"}))
    response = _gateway(handler).resend_email("900123456", "SETP", 990000001)

    assert calls[0].method == "POST"
    assert calls[0].url.path == "/api/send-email-employee/NO"
    assert json.loads(calls[0].content) == {
        "company_idnumber": "900123456", "prefix": "SETP", "number": "990000001",
    }
    assert response["message"] == "Correo enviado"


def test_resend_email_requires_company_nit():
    handler, _ = _recorder(httpx.Response(200, json={}))
    with pytest.raises(ConfigurationError):
        _gateway(handler).resend_email("", "SETP", 1)
