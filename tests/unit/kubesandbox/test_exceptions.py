# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Unit tests for kubesandbox.exceptions module."""

from __future__ import annotations

import pytest
from kubernetes.client.rest import ApiException

from kubesandbox._cluster import _translate_api_error, api_reason, is_conflict
from kubesandbox.exceptions import (
    ErrorKind,
    ExecConnectionError,
    ExecError,
    ExecTimeoutError,
    ImagePullError,
    KubeSandboxError,
    NamespaceError,
    NamespaceNotFoundError,
    PodAlreadyExistsError,
    PodError,
    PodSecurityViolationError,
)


class TestExceptionHierarchy:
    """Tests for exception class hierarchy."""

    def test_all_inherit_from_base(self) -> None:
        """Test every exception is a KubeSandboxError."""
        for cls in (
            NamespaceNotFoundError,
            PodAlreadyExistsError,
            ExecTimeoutError,
            ImagePullError,
            PodSecurityViolationError,
        ):
            assert issubclass(cls, KubeSandboxError)

    def test_exec_errors(self) -> None:
        """Test exec timeout and connection errors are ExecErrors."""
        assert issubclass(ExecTimeoutError, ExecError)
        assert issubclass(ExecConnectionError, ExecError)

    def test_default_kinds(self) -> None:
        """Test each class carries its own default kind."""
        assert NamespaceNotFoundError("x").kind is ErrorKind.NAMESPACE_NOT_FOUND
        assert PodAlreadyExistsError("x").kind is ErrorKind.POD_ALREADY_EXISTS
        assert ExecTimeoutError("x").kind is ErrorKind.EXEC_TIMEOUT
        assert ImagePullError("x").kind is ErrorKind.IMAGE_PULL_BACKOFF

    def test_explicit_kind_overrides_default(self) -> None:
        """Test kind passed at construction wins."""
        err = PodError("quota", kind=ErrorKind.INSUFFICIENT_RESOURCES)
        assert err.kind is ErrorKind.INSUFFICIENT_RESOURCES


class TestKubeSandboxError:
    """Tests for the base error payload."""

    def test_context_is_copied(self) -> None:
        """Test the context dict is not shared with the caller."""
        context = {"pod_name": "p"}
        err = KubeSandboxError("boom", context=context)
        context["pod_name"] = "changed"
        assert err.context == {"pod_name": "p"}

    def test_to_dict(self) -> None:
        """Test serialization for JSON output."""
        err = NamespaceNotFoundError("missing", context={"namespace": "ns"})
        assert err.to_dict() == {
            "kind": "NAMESPACE_NOT_FOUND",
            "message": "missing",
            "context": {"namespace": "ns"},
        }

    def test_str_is_message(self) -> None:
        """Test str() gives the message."""
        assert str(KubeSandboxError("boom")) == "boom"

    def test_security_violations_in_context(self) -> None:
        """Test violations are exposed as an attribute and in context."""
        err = PodSecurityViolationError("bad", violations=["hostNetwork must be false"])
        assert err.violations == ["hostNetwork must be false"]
        assert err.context["violations"] == ["hostNetwork must be false"]


class TestApiErrorTranslation:
    """Tests for ApiException translation helpers."""

    def test_reason_from_json_body(self) -> None:
        """Test the machine reason is read from the Status body."""
        e = ApiException(status=409, reason="Conflict")
        e.body = '{"kind": "Status", "reason": "AlreadyExists"}'
        assert api_reason(e) == "AlreadyExists"
        assert is_conflict(e)

    def test_reason_falls_back_to_http_reason(self) -> None:
        """Test a non-JSON body falls back to the HTTP reason."""
        e = ApiException(status=500, reason="Internal Server Error")
        e.body = "not json"
        assert api_reason(e) == "Internal Server Error"

    def test_forbidden_with_namespace_is_access_denied(self) -> None:
        """Test 403 in a namespace becomes NAMESPACE_ACCESS_DENIED."""
        e = ApiException(status=403, reason="Forbidden")
        err = _translate_api_error(
            e, error_cls=PodError, kind=ErrorKind.POD_CREATION_FAILED, operation="Create pod p",
            namespace="ns",
        )
        assert isinstance(err, NamespaceError)
        assert err.kind is ErrorKind.NAMESPACE_ACCESS_DENIED
        assert err.context["namespace"] == "ns"
        assert err.context["status"] == 403

    @pytest.mark.parametrize("status", [400, 422, 500])
    def test_other_status_uses_operation_class(self, status: int) -> None:
        """Test other statuses keep the operation's class and kind."""
        e = ApiException(status=status, reason="Bad")
        err = _translate_api_error(
            e, error_cls=PodError, kind=ErrorKind.POD_CREATION_FAILED, operation="Create pod p",
            pod_name="p",
        )
        assert type(err) is PodError
        assert err.kind is ErrorKind.POD_CREATION_FAILED
        assert err.context["pod_name"] == "p"
        assert "Create pod p failed" in str(err)
