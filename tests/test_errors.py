"""Tests for the error taxonomy and server error classification."""

import pytest

from integrate_sdk.errors import (
    AuthenticationError,
    AuthorizationError,
    CallbackTimeoutError,
    FlowExpiredError,
    IntegrateSDKError,
    InvalidStateError,
    OAuthFlowError,
    TokenExpiredError,
    ToolCallError,
    ToolTransportError,
    is_auth_error,
    is_authorization_error,
    is_token_expired_error,
    parse_server_error,
)


class TestHierarchy:
    """Tests for the error hierarchy."""

    @pytest.mark.parametrize(
        "error",
        [
            AuthenticationError("x"),
            TokenExpiredError("x"),
            AuthorizationError("x"),
            InvalidStateError("x"),
            FlowExpiredError("x"),
            ToolCallError("x", "tool"),
        ],
    )
    def test_all_derive_from_base(self, error):
        """Test that every error can be caught as IntegrateSDKError."""
        assert isinstance(error, IntegrateSDKError)

    def test_flow_errors(self):
        """Test OAuth flow error relationships."""
        assert isinstance(InvalidStateError("x"), OAuthFlowError)
        assert isinstance(FlowExpiredError("x"), OAuthFlowError)
        assert isinstance(CallbackTimeoutError("x"), TimeoutError)

    def test_token_expired_is_auth_error(self):
        """Test that expiry is a 401-class authentication error."""
        error = TokenExpiredError("expired", provider="github")

        assert is_auth_error(error)
        assert is_token_expired_error(error)
        assert error.status_code == 401
        assert error.provider == "github"

    def test_predicates(self):
        """Test the classification helpers."""
        assert is_authorization_error(AuthorizationError("x"))
        assert not is_auth_error(AuthorizationError("x"))
        assert not is_token_expired_error(AuthenticationError("x"))


class TestParseServerError:
    """Tests for parse_server_error function."""

    def test_jsonrpc_unauthenticated(self):
        """Test JSON-RPC -32001 maps to an authentication error."""
        error = parse_server_error({"code": -32001, "message": "Session invalid"}, provider="github")

        assert type(error) is AuthenticationError
        assert error.provider == "github"

    def test_jsonrpc_401_expired(self):
        """Test that expiry wording yields TokenExpiredError."""
        error = parse_server_error({"code": 401, "message": "Token expired"}, provider="github")

        assert isinstance(error, TokenExpiredError)
        assert error.provider == "github"

    def test_jsonrpc_forbidden_with_scopes(self):
        """Test that required scopes are carried on 403."""
        error = parse_server_error(
            {"code": -32002, "message": "Missing scope", "data": {"requiredScopes": ["repo"]}}
        )

        assert isinstance(error, AuthorizationError)
        assert error.required_scopes == ["repo"]

    @pytest.mark.parametrize(
        "code,prefix",
        [(-32600, "Invalid request"), (-32601, "Method not found"), (-32602, "Invalid params")],
    )
    def test_jsonrpc_protocol_errors(self, code, prefix):
        """Test standard JSON-RPC errors."""
        error = parse_server_error({"code": code, "message": "bad"})

        assert type(error) is IntegrateSDKError
        assert str(error) == f"{prefix}: bad"

    def test_jsonrpc_other_with_tool(self):
        """Test that other JSON-RPC errors become ToolCallError."""
        error = parse_server_error({"code": -32000, "message": "boom"}, tool_name="github_get_repo")

        assert isinstance(error, ToolCallError)
        assert error.tool_name == "github_get_repo"

    def test_transport_error_with_jsonrpc(self):
        """Test that transport errors are classified by their JSON-RPC error."""
        raw = ToolTransportError("Unauthorized", status_code=200, jsonrpc_error={"code": -32001, "message": "nope"})
        assert isinstance(parse_server_error(raw, provider="github"), AuthenticationError)

    def test_status_code_401(self):
        """Test HTTP 401 classification."""
        error = parse_server_error(ToolTransportError("HTTP 401", status_code=401))
        assert isinstance(error, AuthenticationError)

    def test_status_code_403(self):
        """Test HTTP 403 classification."""
        error = parse_server_error(ToolTransportError("HTTP 403", status_code=403))
        assert isinstance(error, AuthorizationError)

    @pytest.mark.parametrize("message", ["got 401 back", "Unauthorized", "unauthenticated request"])
    def test_message_patterns_auth(self, message):
        """Test authentication message patterns."""
        assert is_auth_error(parse_server_error(RuntimeError(message)))

    @pytest.mark.parametrize("message", ["got 403 back", "Forbidden", "unauthorized scope"])
    def test_message_patterns_forbidden(self, message):
        """Test permission message patterns."""
        assert is_authorization_error(parse_server_error(RuntimeError(message)))

    def test_classified_errors_pass_through(self):
        """Test that already-classified errors are returned unchanged."""
        original = AuthenticationError("x")
        parsed = parse_server_error(original, provider="gmail")

        assert parsed is original
        assert parsed.provider == "gmail"

    def test_unknown_error_with_tool(self):
        """Test generic failures during a tool call."""
        error = parse_server_error(ValueError("bad input"), tool_name="gmail_send_message")

        assert isinstance(error, ToolCallError)
        assert "bad input" in str(error)

    def test_unknown_error(self):
        """Test generic failures outside a tool call."""
        error = parse_server_error(ValueError("bad input"))

        assert type(error) is IntegrateSDKError
        assert str(error) == "bad input"

    def test_non_exception(self):
        """Test that arbitrary values are wrapped."""
        assert str(parse_server_error("weird")) == "weird"
