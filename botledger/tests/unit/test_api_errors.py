from __future__ import annotations

from botledger.apps.api.errors import domain_error_status
from botledger.apps.api.response import ERROR_STATUS, coerce_error_code, error_code_for_status
from botledger.core.errors import (
    AgentNotFoundError,
    DeploymentFailedError,
    IntegrationUnavailableError,
    InvalidSignatureError,
    ProviderConfigError,
    QuotaExceededError,
    ReconciliationSkipped,
)
from botledger.services.quota import QuotaDecision


def test_shared_statuses_fall_back_to_first_listed_code() -> None:
    assert error_code_for_status(502) == "DEPLOYMENT_FAILED"
    assert error_code_for_status(500) == "INTERNAL_ERROR"
    assert error_code_for_status(418) == "UNKNOWN_ERROR"


def test_unknown_route_codes_are_replaced_by_status_default() -> None:
    assert coerce_error_code("NOT_FOUND", status_code=404) == "NOT_FOUND"
    assert coerce_error_code("TENANT_MISSING", status_code=404) == "NOT_FOUND"
    assert coerce_error_code(None, status_code=409) == "CONFLICT"


def test_domain_errors_map_onto_the_code_table() -> None:
    decision = QuotaDecision(allowed=False, minutes_used=600, minutes_limit=600, minutes_remaining=0)

    assert domain_error_status(QuotaExceededError(decision)) == (402, "QUOTA_EXCEEDED")
    assert domain_error_status(DeploymentFailedError("exhausted")) == (502, "DEPLOYMENT_FAILED")
    assert domain_error_status(InvalidSignatureError("mismatch")) == (401, "INVALID_SIGNATURE")
    assert domain_error_status(IntegrationUnavailableError("open")) == (502, "AGENT_UNAVAILABLE")
    assert domain_error_status(AgentNotFoundError("gone")) == (502, "AGENT_UNAVAILABLE")
    assert domain_error_status(ProviderConfigError("no key")) == (503, "SERVICE_UNAVAILABLE")
    assert domain_error_status(ReconciliationSkipped("later")) == (500, "INTERNAL_ERROR")
    assert ERROR_STATUS["AGENT_UNAVAILABLE"] == 502
