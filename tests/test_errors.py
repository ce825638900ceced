"""Tests for the error hierarchy and HTTP status mapping."""

from __future__ import annotations

import pytest

from issuepilot.errors import (
    ClientError,
    CollaboratorError,
    ConfigurationError,
    ConnectionFailedError,
    IssuePilotError,
    PipelineError,
    ServerError,
    TransportDisposedError,
    TransportError,
    error_from_status,
)


class TestHierarchy:
    def test_base_defaults(self):
        err = IssuePilotError("x")
        assert not err.is_retryable
        assert err.context == {}

    def test_configuration_never_retryable(self):
        assert not ConfigurationError("bad").is_retryable

    def test_pipeline_flag_and_context(self):
        err = PipelineError("plan failed", retryable=True, context={"issue_number": 3})
        assert err.is_retryable
        assert err.context == {"issue_number": 3}
        assert str(err) == "plan failed"

    def test_collaborator_name(self):
        err = CollaboratorError("404", collaborator="tracker")
        assert err.collaborator == "tracker"

    @pytest.mark.parametrize(
        "cls, retryable",
        [
            (ServerError, True),
            (ClientError, False),
            (ConnectionFailedError, True),
            (TransportDisposedError, False),
        ],
    )
    def test_transport_defaults(self, cls, retryable):
        err = cls("x")
        assert isinstance(err, TransportError)
        assert err.is_retryable is retryable


class TestErrorFromStatus:
    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408, 429])
    def test_server_class(self, status):
        err = error_from_status(status, "failed")
        assert isinstance(err, ServerError)
        assert err.is_retryable
        assert err.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422])
    def test_client_class(self, status):
        err = error_from_status(status, "failed")
        assert isinstance(err, ClientError)
        assert not err.is_retryable

    def test_other_statuses_retryable(self):
        err = error_from_status(302, "redirected", context={"url": "x"})
        assert type(err) is TransportError
        assert err.is_retryable
        assert err.context == {"url": "x"}
