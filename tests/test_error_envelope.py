import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from fixrx.api.error_handling import error_response
from fixrx.api.schemas import Envelope, ErrorBody, RegisterRequest
from fixrx.logging import set_correlation_id


class TestErrorBody:
    @pytest.mark.parametrize(
        "code",
        ["unauthorized", "token_expired", "forbidden", "rate_limited", "service_unavailable"],
    )
    def test_known_codes(self, code):
        assert ErrorBody(code=code, message="m").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="m")


class TestEnvelope:
    def test_success_payload_omits_error_and_extensions(self):
        payload = Envelope(success=True, message="ok", data={"a": 1}).to_payload()
        assert payload["success"] is True
        assert payload["data"] == {"a": 1}
        assert "error" not in payload
        assert "needsRoleSelection" not in payload
        assert "tempUserData" not in payload

    def test_request_id_follows_correlation_id(self):
        set_correlation_id("corr-42")
        assert Envelope(success=True).request_id == "corr-42"

    def test_error_response_shape(self):
        resp = error_response(429, "slow down", code="rate_limited", headers={"Retry-After": "60"})
        body = json.loads(resp.body)
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "60"
        assert body["success"] is False
        assert body["message"] == "slow down"
        assert body["error"] == {"code": "rate_limited", "message": "slow down", "details": None}

    def test_code_defaults_from_status(self):
        body = json.loads(error_response(503, "down").body)
        assert body["error"]["code"] == "service_unavailable"


class TestRequestValidation:
    def test_register_fields_accept_camel_and_snake_case(self):
        camel = RegisterRequest.model_validate(
            {"email": "A@Example.com", "password": "x", "firstName": " Ann "}
        )
        snake = RegisterRequest.model_validate(
            {"email": "a@example.com", "password": "x", "first_name": "Ann"}
        )
        assert camel.email == "a@example.com"
        assert camel.first_name == snake.first_name == "Ann"

    def test_zero_width_characters_stripped_from_email(self):
        req = RegisterRequest.model_validate({"email": "a\u200b@example.com", "password": "x"})
        assert req.email == "a@example.com"

    @pytest.mark.parametrize("phone", ["1", "+0123456", "555-1234", "+1555123456789012"])
    def test_bad_phone_rejected(self, phone):
        with pytest.raises(PydanticValidationError):
            RegisterRequest.model_validate({"email": "a@example.com", "password": "x", "phone": phone})

    def test_malformed_body_is_400_envelope(self, client):
        resp = client.post("/api/v1/auth/login", json={"email": "not-an-email"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["message"] == "Validation failed"
        assert body["error"]["code"] == "validation_error"
        fields = {detail["field"] for detail in body["error"]["details"]}
        assert fields == {"email", "password"}

    def test_unknown_route_uses_envelope(self, client):
        resp = client.get("/api/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"
